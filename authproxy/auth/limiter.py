"""Shared rate limiter for login and key-management endpoints.

Uses slowapi, keyed by client address.  This is separate from the OTP
issuance limits (per email, persisted) and the daily API quota (per user,
persisted); it only caps how fast one address can hit the dashboard routes.

The Limiter instance is shared between:
  - authproxy/auth/router.py       (route decorators)
  - authproxy/dashboard/api.py     (route decorators)
  - authproxy/main.py              (app.state.limiter + SlowAPIMiddleware)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

LOGIN_RATE_LIMIT = "20/minute"
KEY_MANAGEMENT_RATE_LIMIT = "20/minute"
