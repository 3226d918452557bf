"""Dashboard sessions and CSRF protection.

Sessions are signed cookies (itsdangerous ``URLSafeTimedSerializer``) carrying
the user id, email and a random session id.  They expire after
``session.ttl_days``; nothing is stored server-side.

CSRF tokens are signed payloads bound to the session id.  Every mutating
dashboard request must echo one in the ``X-CSRF-Token`` header; a token minted
for another session, or for no session, is rejected.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request, Response
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from authproxy.config import Config
from authproxy.constants import CSRF_HEADER
from authproxy.errors import CsrfError, SessionError
from authproxy.utils.logger import get_logger

logger = get_logger(__name__)

SAFE_METHODS: frozenset[str] = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(frozen=True)
class Session:
    user_id: int
    email: str
    sid: str


class SessionManager:
    """Issue, read and clear the signed session cookie; mint and check CSRF tokens."""

    def __init__(self, config: Config) -> None:
        self._cookie_name = config.session.cookie_name
        self._max_age = config.session.ttl_days * 86400
        self._secure = config.secure_cookies
        self._sessions = URLSafeTimedSerializer(config.session.secret, salt="authproxy-session")
        self._csrf = URLSafeTimedSerializer(config.session.secret, salt="authproxy-csrf")

    @property
    def cookie_name(self) -> str:
        return self._cookie_name

    # ── Sessions ──────────────────────────────────────────────────────────────

    def issue(self, user_id: int, email: str) -> str:
        return self._sessions.dumps({"uid": user_id, "email": email, "sid": secrets.token_urlsafe(16)})

    def load(self, token: Optional[str]) -> Session:
        """Decode a session cookie value.

        Raises:
            SessionError: missing, tampered or expired cookie.
        """
        if not token:
            raise SessionError()
        try:
            data = self._sessions.loads(token, max_age=self._max_age)
        except SignatureExpired:
            raise SessionError("Session expired, please log in again", code="session_expired") from None
        except BadSignature:
            raise SessionError("Invalid session", code="invalid_session") from None
        try:
            return Session(user_id=int(data["uid"]), email=str(data["email"]), sid=str(data["sid"]))
        except (KeyError, TypeError, ValueError):
            raise SessionError("Invalid session", code="invalid_session") from None

    def set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            key=self._cookie_name,
            value=token,
            max_age=self._max_age,
            httponly=True,
            samesite="lax",
            secure=self._secure,
            path="/",
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            key=self._cookie_name,
            httponly=True,
            samesite="lax",
            secure=self._secure,
            path="/",
        )

    # ── CSRF ──────────────────────────────────────────────────────────────────

    def csrf_token(self, session: Session) -> str:
        return self._csrf.dumps({"sid": session.sid, "nonce": secrets.token_urlsafe(8)})

    def check_csrf(self, token: Optional[str], session: Session) -> bool:
        if not token:
            return False
        try:
            data = self._csrf.loads(token, max_age=self._max_age)
        except (BadSignature, SignatureExpired):
            return False
        return isinstance(data, dict) and data.get("sid") == session.sid


# ─── FastAPI dependencies ─────────────────────────────────────────────────────


def require_session(request: Request) -> Session:
    """Resolve the logged-in user from the session cookie or raise 401."""
    sessions: SessionManager = request.app.state.sessions
    return sessions.load(request.cookies.get(sessions.cookie_name))


def enforce_csrf(request: Request, session: Session = Depends(require_session)) -> Session:
    """Require a valid ``X-CSRF-Token`` on mutating requests.  Returns the session."""
    if request.method.upper() in SAFE_METHODS:
        return session
    sessions: SessionManager = request.app.state.sessions
    if not sessions.check_csrf(request.headers.get(CSRF_HEADER), session):
        logger.warning("csrf_rejected", user_id=session.user_id, path=request.url.path)
        raise CsrfError()
    return session
