"""Shared constants for authproxy.

Numeric limits, header names and credential parameters used across modules
live here.  Values that operators may tune are exposed through
``authproxy.config`` and default to the constants below.
"""

# ─── Header names ─────────────────────────────────────────────────────────────

#: Header carrying the caller's API key.  Matched case-insensitively.
API_KEY_HEADER: str = "X-API-Key"

#: Response header naming the authenticated user id on every forwarded response.
USER_HEADER: str = "X-AuthProxy-User"

#: Request id header sent upstream when the caller did not provide one.
REQUEST_ID_HEADER: str = "X-Request-ID"

#: Header carrying the CSRF token on mutating dashboard requests.
CSRF_HEADER: str = "X-CSRF-Token"

# ─── Credential parameters ────────────────────────────────────────────────────
# Changing any of these invalidates every stored hash; keys and codes must be
# re-issued, there is no migration path.

#: Random bytes behind the public key prefix (rendered as 8 hex chars).
KEY_PREFIX_BYTES: int = 4

#: Random bytes behind the secret part (rendered as 32 url-safe chars).
KEY_SECRET_BYTES: int = 24

#: Separator between prefix and secret in a full key.
KEY_SEPARATOR: str = "."

#: Shortest string that can possibly be a well-formed key.
KEY_MIN_LENGTH: int = 12

#: Per-record salt size.
SALT_BYTES: int = 16

#: bcrypt-pbkdf output length.
HASH_LENGTH: int = 32

#: bcrypt-pbkdf rounds.  Tuned so one verification costs tens of milliseconds.
HASH_ROUNDS: int = 8

#: Number of digits in an OTP code.
OTP_DIGITS: int = 6

#: Attempts at inserting a freshly generated key before giving up.
KEY_CREATE_ATTEMPTS: int = 3

# ─── OTP policy defaults ──────────────────────────────────────────────────────

OTP_TTL_MINUTES: int = 10
OTP_RESEND_COOLDOWN_SECONDS: int = 120
OTP_HOURLY_CAP: int = 5

#: Unconsumed codes considered per verification, newest first.
OTP_VERIFY_LOOKBACK: int = 10

# ─── Quota defaults ───────────────────────────────────────────────────────────

DEFAULT_DAILY_LIMIT: int = 50

# ─── Proxy limits ─────────────────────────────────────────────────────────────

#: Paths refused with 404 before any credential work.
DEFAULT_BLOCKED_PATHS: tuple[str, ...] = ("/openapi.json", "/docs", "/redoc")

#: JSON / form bodies up to this size are captured for inspection; larger
#: bodies are streamed to the upstream untouched.
MAX_CAPTURE_BODY_BYTES: int = 1_048_576  # 1 MB

#: Upstream round-trip budget (connect through response headers).
DEFAULT_UPSTREAM_TIMEOUT_SECONDS: float = 30.0

# ─── Session defaults ─────────────────────────────────────────────────────────

SESSION_COOKIE_NAME: str = "authproxy_session"
SESSION_TTL_DAYS: int = 7

#: Placeholder secret used when none is configured.  Refused in production.
INSECURE_DEFAULT_SECRET: str = "authproxy-insecure-development-secret"
