"""API key lifecycle: create, validate, revoke, list, usage stamp.

Implements:
  - ApiKeyManager.create()       — generate + store, retry on prefix collision
  - ApiKeyManager.validate()     — format check, active-prefix lookup, hash check
  - ApiKeyManager.revoke()       — one-way tombstone (``revoked_at``)
  - ApiKeyManager.touch_usage()  — best-effort ``last_used_at`` stamp
  - ApiKeyManager.list_keys()    — dashboard listing, no secrets

Non-negotiables:
  - Plaintext keys never stored; only salt + hash (base64url text).
  - Revoked keys validate exactly like unknown keys (``not_found``).
  - Malformed keys are rejected before any storage access.
  - Rows are never deleted; revocation sets ``revoked_at`` once.

Prefixes are unique per user only, so validation checks every active row that
shares a prefix.  With 32 random bits per prefix that is almost always one row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from authproxy.auth.credentials import (
    decode_b64,
    encode_b64,
    generate_api_key,
    split_key,
    verify_full_key,
)
from authproxy.constants import KEY_CREATE_ATTEMPTS, KEY_MIN_LENGTH
from authproxy.db import Database
from authproxy.errors import KeyCreationError, StorageError, UniqueViolation
from authproxy.utils.logger import get_logger
from authproxy.utils.timeutil import from_iso, to_iso, utc_now

logger = get_logger(__name__)


# ─── Result types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CreatedKey:
    """Returned once at creation; ``key`` is never retrievable again."""

    id: int
    key: str
    prefix: str


@dataclass(frozen=True)
class KeyValidation:
    ok: bool
    reason: Optional[str] = None  # "format" | "not_found" | "mismatch"
    user_id: Optional[int] = None
    key_id: Optional[int] = None
    prefix: Optional[str] = None


@dataclass(frozen=True)
class RevokeOutcome:
    ok: bool
    reason: Optional[str] = None  # "not_found" | "not_revoked"


@dataclass(frozen=True)
class KeyInfo:
    id: int
    prefix: str
    label: Optional[str]
    created_at: datetime
    revoked_at: Optional[datetime]
    last_used_at: Optional[datetime]

    @property
    def active(self) -> bool:
        return self.revoked_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "prefix": self.prefix,
            "label": self.label,
            "active": self.active,
            "created_at": to_iso(self.created_at),
            "revoked_at": to_iso(self.revoked_at) if self.revoked_at else None,
            "last_used_at": to_iso(self.last_used_at) if self.last_used_at else None,
        }


def _parse_optional(value: Optional[str]) -> Optional[datetime]:
    return from_iso(value) if value else None


def is_well_formed(raw_key: str) -> bool:
    """Cheap shape check: long enough and a non-empty prefix before the separator."""
    if len(raw_key) < KEY_MIN_LENGTH:
        return False
    prefix, secret = split_key(raw_key)
    return bool(prefix) and bool(secret)


# ─── Manager ──────────────────────────────────────────────────────────────────


class ApiKeyManager:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(self, user_id: int, label: Optional[str] = None, now: Optional[datetime] = None) -> CreatedKey:
        """Generate and store a new key for ``user_id``.

        A UNIQUE(user_id, key_prefix) collision retries with a fresh key, up
        to KEY_CREATE_ATTEMPTS times.  Any other storage error propagates.

        Raises:
            KeyCreationError: every attempt collided.
            StorageError:     the store failed for another reason.
        """
        stamp = to_iso(now or utc_now())
        for attempt in range(1, KEY_CREATE_ATTEMPTS + 1):
            generated = generate_api_key()
            try:
                async with self._db.transaction() as conn:
                    cursor = await conn.execute(
                        "INSERT INTO api_keys (user_id, key_prefix, key_hash, salt, label, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (
                            user_id,
                            generated.prefix,
                            encode_b64(generated.hash),
                            encode_b64(generated.salt),
                            label,
                            stamp,
                        ),
                    )
                    key_id = cursor.lastrowid
            except UniqueViolation:
                logger.warning("key_prefix_collision", user_id=user_id, attempt=attempt)
                continue

            logger.info("key_created", user_id=user_id, key_id=key_id, prefix=generated.prefix)
            return CreatedKey(id=key_id, key=generated.key, prefix=generated.prefix)

        logger.error("key_create_exhausted", user_id=user_id, attempts=KEY_CREATE_ATTEMPTS)
        raise KeyCreationError()

    async def validate(self, raw_key: str) -> KeyValidation:
        """Resolve a presented key to its owner.

        Never raises for bad input; storage failures propagate as StorageError.
        """
        if not is_well_formed(raw_key):
            return KeyValidation(ok=False, reason="format")

        prefix, _ = split_key(raw_key)
        async with self._db.connect() as conn:
            cursor = await conn.execute(
                "SELECT id, user_id, key_hash, salt FROM api_keys "
                "WHERE key_prefix = ? AND revoked_at IS NULL",
                (prefix,),
            )
            rows = await cursor.fetchall()

        if not rows:
            return KeyValidation(ok=False, reason="not_found", prefix=prefix)

        for row in rows:
            if verify_full_key(raw_key, decode_b64(row["salt"]), decode_b64(row["key_hash"])):
                return KeyValidation(
                    ok=True,
                    user_id=row["user_id"],
                    key_id=row["id"],
                    prefix=prefix,
                )
        return KeyValidation(ok=False, reason="mismatch", prefix=prefix)

    async def revoke(self, user_id: int, key_id: int, now: Optional[datetime] = None) -> RevokeOutcome:
        stamp = to_iso(now or utc_now())
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT revoked_at FROM api_keys WHERE id = ? AND user_id = ?",
                (key_id, user_id),
            )
            row = await cursor.fetchone()
            if row is None:
                return RevokeOutcome(ok=False, reason="not_found")
            if row["revoked_at"] is not None:
                return RevokeOutcome(ok=False, reason="not_revoked")
            await conn.execute(
                "UPDATE api_keys SET revoked_at = ? WHERE id = ? AND revoked_at IS NULL",
                (stamp, key_id),
            )

        logger.info("key_revoked", user_id=user_id, key_id=key_id)
        return RevokeOutcome(ok=True)

    async def touch_usage(self, key_id: int, now: Optional[datetime] = None) -> None:
        """Stamp ``last_used_at``.  Failures are logged and swallowed."""
        try:
            async with self._db.connect() as conn:
                await conn.execute(
                    "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
                    (to_iso(now or utc_now()), key_id),
                )
        except StorageError as exc:
            logger.warning("key_touch_failed", key_id=key_id, error=exc.message)

    async def list_keys(self, user_id: int) -> list[KeyInfo]:
        async with self._db.connect() as conn:
            cursor = await conn.execute(
                "SELECT id, key_prefix, label, created_at, revoked_at, last_used_at "
                "FROM api_keys WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,),
            )
            rows = await cursor.fetchall()
        return [
            KeyInfo(
                id=row["id"],
                prefix=row["key_prefix"],
                label=row["label"],
                created_at=from_iso(row["created_at"]),
                revoked_at=_parse_optional(row["revoked_at"]),
                last_used_at=_parse_optional(row["last_used_at"]),
            )
            for row in rows
        ]
