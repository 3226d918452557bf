"""Login endpoints: OTP request, OTP verification, logout.

Provides:
  POST /auth/login               — issue a code and deliver it by email
  POST /auth/verify              — check a code, create the user, set the session cookie
  POST /auth/logout              — clear the session cookie (CSRF-protected)
  GET  /auth/debug/last-code     — last issued code for an email (debug cache only)

A wrong code and a missing/expired code produce the same response so the
endpoint does not reveal whether a code is outstanding for an email.
"""

import re
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from authproxy.audit.models import AuditEvent
from authproxy.auth.limiter import LOGIN_RATE_LIMIT, limiter
from authproxy.auth.session import Session, enforce_csrf
from authproxy.auth.users import get_or_create_user, normalize_email
from authproxy.constants import OTP_DIGITS
from authproxy.errors import DeliveryError, NotFoundError, RateLimitError, ValidationError
from authproxy.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Arabic-Indic (U+0660..U+0669) and extended Arabic-Indic / Persian
# (U+06F0..U+06F9) digits map onto ASCII.
_DIGIT_TRANSLATION = {
    **{0x0660 + i: str(i) for i in range(10)},
    **{0x06F0 + i: str(i) for i in range(10)},
}


# ─── Input helpers ────────────────────────────────────────────────────────────


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def sanitize_otp(raw: str) -> str:
    """Normalize non-ASCII digits, drop everything else, keep at most 6 digits."""
    translated = raw.translate(_DIGIT_TRANSLATION)
    digits = "".join(ch for ch in translated if "0" <= ch <= "9")
    return digits[:OTP_DIGITS]


async def _audit(request: Request, audit_type: str, user_id: Optional[int] = None, **details: Any) -> None:
    state = request.app.state
    await state.audit_backend.log_event(
        AuditEvent(type=audit_type, user_id=user_id, details=details, created_at=state.clock())
    )


# ─── Request Models ───────────────────────────────────────────────────────────


class LoginRequest(BaseModel):
    email: str


class VerifyRequest(BaseModel):
    email: str
    code: str


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/login")
@limiter.limit(LOGIN_RATE_LIMIT)
async def request_code(body: LoginRequest, request: Request) -> dict:
    """Issue a login code for ``email`` and send it.

    Returns:
        JSON: {status: "sent", ttl_minutes} plus ``debug_code`` when delivery
        fell back to debug mode outside production.

    Raises:
        400 invalid_email, 429 rate_minute / rate_hour, 503 delivery_failed.
    """
    state = request.app.state
    email = normalize_email(body.email)
    if not is_valid_email(email):
        raise ValidationError("Please enter a valid email address", code="invalid_email")

    try:
        issued = await state.otp.issue(email, state.clock())
    except RateLimitError as exc:
        await _audit(
            request,
            "otp_send_block",
            email=email,
            reason=exc.code,
            wait_seconds=exc.extra.get("wait_seconds"),
        )
        raise

    try:
        delivery = await state.notifier.send_code(email, issued.code)
    except DeliveryError as exc:
        await _audit(request, "otp_send_error", email=email, error=exc.code)
        raise

    await _audit(request, "otp_send", email=email, debug=delivery.debug)

    result: dict[str, Any] = {"status": "sent", "ttl_minutes": state.config.otp.ttl_minutes}
    if delivery.debug and delivery.code:
        result["debug_code"] = delivery.code
    return result


@router.post("/verify")
@limiter.limit(LOGIN_RATE_LIMIT)
async def verify_code(body: VerifyRequest, request: Request) -> JSONResponse:
    """Verify a login code and start a dashboard session.

    Returns:
        JSON: {user_id, email, csrf_token} with the session cookie set.

    Raises:
        400 invalid_email, 400 invalid_code_format, 400 invalid_code.
    """
    state = request.app.state
    email = normalize_email(body.email)
    if not is_valid_email(email):
        raise ValidationError("Invalid email", code="invalid_email")
    code = sanitize_otp(body.code)
    if len(code) != OTP_DIGITS:
        raise ValidationError("The code must be 6 digits", code="invalid_code_format")

    now = state.clock()
    result = await state.otp.verify(email, code, now)
    if not result.ok:
        await _audit(request, "otp_verify_fail", email=email, reason=result.reason)
        raise ValidationError(
            "Incorrect or expired code. Please try again or request a new code.",
            code="invalid_code",
        )

    user = await get_or_create_user(state.db, email, now)
    await _audit(request, "otp_verify", user_id=user.id, email=email)

    token = state.sessions.issue(user.id, user.email)
    session = state.sessions.load(token)
    response = JSONResponse(
        {"user_id": user.id, "email": user.email, "csrf_token": state.sessions.csrf_token(session)}
    )
    state.sessions.set_cookie(response, token)
    return response


@router.post("/logout")
async def logout(request: Request, session: Session = Depends(enforce_csrf)) -> JSONResponse:
    await _audit(request, "logout", user_id=session.user_id)
    response = JSONResponse({"status": "logged_out"})
    request.app.state.sessions.clear_cookie(response)
    return response


@router.get("/debug/last-code")
async def debug_last_code(request: Request, email: str) -> dict:
    """Return the last code issued for ``email`` (debug cache only).

    404 when the cache is disabled, which is always the case in production.
    """
    cache = getattr(request.app.state, "otp_debug_cache", None)
    if cache is None:
        raise NotFoundError()
    code = cache.last_code(email)
    if code is None:
        raise NotFoundError("No code issued for this email")
    return {"email": normalize_email(email), "code": code}
