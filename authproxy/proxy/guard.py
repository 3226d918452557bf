"""Admission Guard: decides whether an inbound request may reach the upstream.

Pipeline (strict order, first failure wins):

  1. Blocked path      → 404 ``not_found``        audit proxy_block{reason: docs}
  2. No API key header → 401 ``missing_key``      audit proxy_block{reason: missing_key}
  3. Key invalid       → 401 ``format`` | ``not_found`` | ``mismatch``
                                                   audit proxy_block{reason: <code>}
  4. Over daily quota  → 429 ``quota_exceeded``   audit proxy_block{reason: quota}
  5. Admitted          → usage incremented, key touched, audit proxy_hit

A store failure in steps 3-4 ends the request with 500 ``storage_error`` and
audit proxy_block{reason: storage_error}.

Every terminal decision writes exactly one audit entry, and all side effects
of step 5 complete before the forwarder opens an upstream connection.
Blocked paths are refused before any credential work, even with a valid key.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import NoReturn, Optional

from authproxy.audit.models import AuditEvent
from authproxy.audit.protocol import AuditBackend
from authproxy.auth.keys import ApiKeyManager
from authproxy.config import Config
from authproxy.errors import AuthError, NotFoundError, RateLimitError, StorageError
from authproxy.quota.tracker import QuotaTracker
from authproxy.utils.logger import get_logger
from authproxy.utils.timeutil import seconds_until_utc_midnight, utc_date

logger = get_logger(__name__)

_AUTH_MESSAGES: dict[str, str] = {
    "missing_key": "Missing X-API-Key header",
    "format": "Malformed API key",
    "not_found": "Unknown or revoked API key",
    "mismatch": "Invalid API key",
}


@dataclass(frozen=True)
class Admission:
    """A request cleared for forwarding."""

    user_id: int
    key_id: int
    prefix: str
    count: int
    limit: int


class AdmissionGuard:
    def __init__(
        self,
        config: Config,
        keys: ApiKeyManager,
        quota: QuotaTracker,
        audit: AuditBackend,
    ) -> None:
        self._config = config
        self._keys = keys
        self._quota = quota
        self._audit = audit
        self._blocked_paths: frozenset[str] = frozenset(config.upstream.blocked_paths)

    def is_blocked(self, path: str) -> bool:
        return path in self._blocked_paths

    async def _block(self, reason: str, now: datetime, user_id: Optional[int] = None, **details) -> None:
        await self._audit.log_event(
            AuditEvent(
                type="proxy_block",
                user_id=user_id,
                details={"reason": reason, **details},
                created_at=now,
            )
        )
        logger.info("proxy_block", reason=reason, user_id=user_id, **details)

    async def admit(
        self,
        path: str,
        method: str,
        api_key: Optional[str],
        now: datetime,
    ) -> Admission:
        """Run the admission pipeline.

        Raises:
            NotFoundError:  blocked path.
            AuthError:      ``missing_key``, ``format``, ``not_found``, ``mismatch``.
            RateLimitError: ``quota_exceeded`` with count, limit and reset_seconds.
            StorageError:   the store failed; the request fails, nothing is forwarded.
        """
        # ── 1. Path block ─────────────────────────────────────────────────────
        if self.is_blocked(path):
            await self._block("docs", now, path=path)
            raise NotFoundError("Not found")

        # ── 2. Credential presence ────────────────────────────────────────────
        if not api_key:
            await self._block("missing_key", now, path=path)
            raise AuthError(_AUTH_MESSAGES["missing_key"], code="missing_key")

        # ── 3. Credential validity ────────────────────────────────────────────
        try:
            result = await self._keys.validate(api_key)
        except StorageError:
            await self._block("storage_error", now, path=path)
            raise
        if not result.ok:
            reason = result.reason or "not_found"
            details = {"path": path}
            if result.prefix:
                details["prefix"] = result.prefix
            await self._block(reason, now, **details)
            raise AuthError(_AUTH_MESSAGES[reason], code=reason)

        user_id = result.user_id
        today = utc_date(now)
        limit = self._config.quota.daily_limit

        # ── 4. Quota ──────────────────────────────────────────────────────────
        try:
            if self._config.quota.enforcement == "hard":
                count = await self._quota.increment_with_ceiling(user_id, today, limit)
                if count is None:
                    await self._reject_quota(user_id, limit, limit, now, path)
            else:
                current = await self._quota.get_count(user_id, today)
                if current >= limit:
                    await self._reject_quota(user_id, current, limit, now, path)
                count = await self._quota.increment_today(user_id, today)
        except StorageError:
            await self._block("storage_error", now, user_id=user_id, path=path)
            raise

        # ── 5. Admit ──────────────────────────────────────────────────────────
        await self._keys.touch_usage(result.key_id, now)
        await self._audit.log_event(
            AuditEvent(
                type="proxy_hit",
                user_id=user_id,
                details={"path": path, "method": method},
                created_at=now,
            )
        )
        logger.info("proxy_admit", user_id=user_id, key_id=result.key_id, count=count, limit=limit)
        return Admission(
            user_id=user_id,
            key_id=result.key_id,
            prefix=result.prefix,
            count=count,
            limit=limit,
        )

    async def _reject_quota(self, user_id: int, count: int, limit: int, now: datetime, path: str) -> NoReturn:
        reset_seconds = seconds_until_utc_midnight(now)
        await self._block("quota", now, user_id=user_id, path=path, count=count, limit=limit)
        raise RateLimitError(
            "Daily request quota exceeded",
            code="quota_exceeded",
            extra={"count": count, "limit": limit, "reset_seconds": reset_seconds},
            headers={"Retry-After": str(reset_seconds)},
        )
