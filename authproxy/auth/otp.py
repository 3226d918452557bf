"""One-time passcode issuance and verification for dashboard login.

Implements:
  - OtpAuthenticator.can_issue() — resend cooldown + hourly cap check
  - OtpAuthenticator.issue()     — generate, hash and store a code
  - OtpAuthenticator.verify()    — fixed-time check against recent codes, single use
  - OtpDebugCache                — optional in-memory copy of the last code per email
                                   (non-production diagnostics only)

Per-email lifecycle:

    NoActiveCode --issue--> Issued --verify ok--> Consumed
                              |--ttl elapses--> Expired (evaluated lazily)
                              |--issue again--> Superseded (still verifiable until expiry)

Rate limits:
  - ``rate_minute``: a new code within the resend cooldown of the latest one.
    ``wait_seconds`` is the remaining cooldown, rounded up.
  - ``rate_hour``: ``hourly_cap`` codes already created in the trailing hour.

There is no per-code attempt counter; brute force is bounded by the issuance
caps and the short TTL.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import aiosqlite

from authproxy.auth.credentials import (
    decode_b64,
    encode_b64,
    encode_secret,
    generate_otp_code,
    hash_secret,
    new_salt,
    verify_secret,
)
from authproxy.auth.users import normalize_email
from authproxy.config import OtpConfig
from authproxy.constants import OTP_VERIFY_LOOKBACK
from authproxy.db import Database
from authproxy.errors import RateLimitError
from authproxy.utils.logger import get_logger
from authproxy.utils.timeutil import from_iso, to_iso

logger = get_logger(__name__)


# ─── Result types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class IssueCheck:
    allowed: bool
    reason: Optional[str] = None  # "rate_minute" | "rate_hour"
    wait_seconds: Optional[int] = None

    def raise_if_denied(self) -> None:
        if self.allowed:
            return
        if self.reason == "rate_minute":
            raise RateLimitError(
                f"Please wait {self.wait_seconds} seconds before requesting another code",
                code="rate_minute",
                extra={"wait_seconds": self.wait_seconds},
                headers={"Retry-After": str(self.wait_seconds)},
            )
        raise RateLimitError(
            "Too many codes requested in the last hour, please try again later",
            code="rate_hour",
        )


@dataclass(frozen=True)
class IssuedCode:
    """A stored code.  ``code`` is the plaintext, handed to the notifier only."""

    id: int
    email: str
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class OtpVerification:
    ok: bool
    reason: Optional[str] = None  # "not_found" | "invalid_code"
    otp_id: Optional[int] = None


# ─── Debug cache ──────────────────────────────────────────────────────────────


class OtpDebugCache:
    """Last issued plaintext code per email, kept in process memory.

    Only created when ``otp.debug_cache`` is enabled outside production.
    Verification never reads from it.
    """

    def __init__(self) -> None:
        self._codes: dict[str, str] = {}

    def remember(self, email: str, code: str) -> None:
        self._codes[normalize_email(email)] = code

    def last_code(self, email: str) -> Optional[str]:
        return self._codes.get(normalize_email(email))


# ─── Authenticator ────────────────────────────────────────────────────────────


class OtpAuthenticator:
    def __init__(
        self,
        db: Database,
        config: Optional[OtpConfig] = None,
        debug_cache: Optional[OtpDebugCache] = None,
    ) -> None:
        self._db = db
        self._config = config or OtpConfig()
        self._debug_cache = debug_cache

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self._config.ttl_minutes)

    async def _check(self, conn: aiosqlite.Connection, email: str, now: datetime) -> IssueCheck:
        cursor = await conn.execute(
            "SELECT last_sent_at FROM otps WHERE email = ? "
            "ORDER BY created_at DESC, id DESC LIMIT 1",
            (email,),
        )
        latest = await cursor.fetchone()
        if latest is not None:
            elapsed = (now - from_iso(latest["last_sent_at"])).total_seconds()
            remaining = self._config.resend_cooldown_s - elapsed
            if remaining > 0:
                return IssueCheck(False, "rate_minute", math.ceil(remaining))

        cursor = await conn.execute(
            "SELECT COUNT(*) FROM otps WHERE email = ? AND created_at >= ?",
            (email, to_iso(now - timedelta(hours=1))),
        )
        row = await cursor.fetchone()
        if row[0] >= self._config.hourly_cap:
            return IssueCheck(False, "rate_hour")

        return IssueCheck(True)

    async def can_issue(self, email: str, now: datetime) -> IssueCheck:
        async with self._db.connect() as conn:
            return await self._check(conn, normalize_email(email), now)

    async def issue(self, email: str, now: datetime) -> IssuedCode:
        """Generate and store a new code for ``email``.

        The rate check and the insert share one write transaction, so two
        concurrent requests cannot both slip under the cooldown.

        Raises:
            RateLimitError: ``rate_minute`` (with ``wait_seconds``) or ``rate_hour``.
        """
        email = normalize_email(email)
        expires_at = now + self.ttl
        stamp = to_iso(now)

        async with self._db.transaction() as conn:
            check = await self._check(conn, email, now)
            if not check.allowed:
                logger.info("otp_issue_denied", reason=check.reason, wait_seconds=check.wait_seconds)
                check.raise_if_denied()

            # Denied requests never pay for hashing.
            code = generate_otp_code()
            salt = new_salt()
            code_hash = hash_secret(encode_secret(code), salt)
            cursor = await conn.execute(
                "INSERT INTO otps (email, code_hash, salt, expires_at, created_at, last_sent_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (email, encode_b64(code_hash), encode_b64(salt), to_iso(expires_at), stamp, stamp),
            )
            otp_id = cursor.lastrowid

        if self._debug_cache is not None:
            self._debug_cache.remember(email, code)

        logger.info("otp_issued", otp_id=otp_id, expires_at=to_iso(expires_at))
        return IssuedCode(id=otp_id, email=email, code=code, expires_at=expires_at)

    async def verify(self, email: str, code: str, now: datetime) -> OtpVerification:
        """Check ``code`` against the most recent unconsumed, unexpired codes.

        The first matching code is consumed.  A guarded UPDATE makes
        consumption single-use even when two verifications race.

        Returns:
            OtpVerification with reason ``not_found`` when no active code exists
            and ``invalid_code`` when codes exist but none matches.  Callers
            must present both the same way.
        """
        email = normalize_email(email)
        async with self._db.connect() as conn:
            cursor = await conn.execute(
                "SELECT id, code_hash, salt, expires_at FROM otps "
                "WHERE email = ? AND consumed_at IS NULL "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (email, OTP_VERIFY_LOOKBACK),
            )
            rows = await cursor.fetchall()

            active = [row for row in rows if from_iso(row["expires_at"]) > now]
            if not active:
                return OtpVerification(ok=False, reason="not_found")

            presented = encode_secret(code)
            for row in active:
                if not verify_secret(presented, decode_b64(row["salt"]), decode_b64(row["code_hash"])):
                    continue
                cursor = await conn.execute(
                    "UPDATE otps SET consumed_at = ? WHERE id = ? AND consumed_at IS NULL",
                    (to_iso(now), row["id"]),
                )
                if cursor.rowcount == 1:
                    logger.info("otp_verified", otp_id=row["id"])
                    return OtpVerification(ok=True, otp_id=row["id"])

        return OtpVerification(ok=False, reason="invalid_code")
