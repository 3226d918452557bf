"""Authentication package: credentials, OTP login, API keys, sessions.

Public API:
  - ApiKeyManager      — create / validate / revoke / list API keys
  - OtpAuthenticator   — issue and verify one-time login codes
  - OtpDebugCache      — optional last-code cache for local debugging
  - SessionManager     — signed session cookie + CSRF tokens
  - get_or_create_user — user lookup by email
"""

from __future__ import annotations

from authproxy.auth.keys import ApiKeyManager
from authproxy.auth.otp import OtpAuthenticator, OtpDebugCache
from authproxy.auth.session import SessionManager
from authproxy.auth.users import get_or_create_user

__all__ = [
    "ApiKeyManager",
    "OtpAuthenticator",
    "OtpDebugCache",
    "SessionManager",
    "get_or_create_user",
]
