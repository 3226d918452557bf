"""Error taxonomy for authproxy.

Every error raised by the service derives from ``AuthProxyError`` and carries:
  - ``code``        — stable machine-readable identifier (returned to clients)
  - ``message``     — human-readable text (returned to clients)
  - ``status_code`` — HTTP status used by the app-level exception handler
  - ``extra``       — optional additional body fields (quota counters, waits)
  - ``headers``     — optional response headers (e.g. Retry-After)

The exception handler in ``authproxy.main`` renders all of them as::

    {"error": {"message": "...", "code": "..."}, **extra}

Upstream failure codes are deliberately opaque: connection details never reach
the caller, they are logged instead.
"""

from __future__ import annotations

from typing import Any, Optional


class AuthProxyError(Exception):
    """Base class for all errors surfaced to HTTP callers."""

    code: str = "internal_error"
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        self.extra: dict[str, Any] = extra or {}
        self.headers: dict[str, str] = headers or {}
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": {"message": self.message, "code": self.code}}
        body.update(self.extra)
        return body


# ─── Client errors ────────────────────────────────────────────────────────────


class ValidationError(AuthProxyError):
    """Malformed input: email, OTP code, request body."""

    code = "invalid_request"
    status_code = 400
    default_message = "Invalid request"


class AuthError(AuthProxyError):
    """API key authentication failure.

    Codes: ``missing_key``, ``format``, ``not_found``, ``mismatch``.
    """

    code = "unauthorized"
    status_code = 401
    default_message = "Invalid API key"


class SessionError(AuthProxyError):
    """Dashboard request without a valid session cookie."""

    code = "not_authenticated"
    status_code = 401
    default_message = "Login required"


class CsrfError(AuthProxyError):
    code = "csrf_failed"
    status_code = 403
    default_message = "CSRF token missing or invalid"


class NotFoundError(AuthProxyError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class ConflictError(AuthProxyError):
    code = "conflict"
    status_code = 409
    default_message = "Conflict"


class RateLimitError(AuthProxyError):
    """Too many requests.

    Codes: ``rate_minute`` (OTP resend cooldown), ``rate_hour`` (OTP hourly
    cap), ``quota_exceeded`` (daily API quota).
    """

    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests"


# ─── Server-side errors ───────────────────────────────────────────────────────


class UpstreamError(AuthProxyError):
    """Upstream unreachable (502) or too slow (504)."""

    code = "upstream_unavailable"
    status_code = 502
    default_message = "Upstream service unavailable"


class UpstreamTimeoutError(UpstreamError):
    code = "upstream_timeout"
    status_code = 504
    default_message = "Upstream service timed out"


class StorageError(AuthProxyError):
    """A persistent-store operation failed.  Fails the current request only."""

    code = "storage_error"
    status_code = 500
    default_message = "Storage unavailable"


class UniqueViolation(StorageError):
    """A UNIQUE constraint rejected an insert."""

    code = "unique_violation"


class KeyCreationError(AuthProxyError):
    """Key creation exhausted its prefix-collision retries."""

    code = "failed_to_create"
    status_code = 500
    default_message = "Could not create API key, please retry"


class DeliveryError(AuthProxyError):
    """The OTP email could not be delivered (production only)."""

    code = "delivery_failed"
    status_code = 503
    default_message = "Could not send the login code, please try again later"


class ServiceNotReadyError(AuthProxyError):
    code = "service_starting"
    status_code = 503
    default_message = "Service is starting up, please retry"
