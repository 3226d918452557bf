"""User accounts.

A user is identified by email and created on the first successful OTP
verification for that email.  Users are never deleted by the service.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from authproxy.db import Database
from authproxy.utils.logger import get_logger
from authproxy.utils.timeutil import to_iso

logger = get_logger(__name__)


@dataclass(frozen=True)
class User:
    id: int
    email: str


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_or_create_user(db: Database, email: str, now: datetime) -> User:
    """Return the user for ``email``, creating it if needed, and stamp the login time."""
    email = normalize_email(email)
    stamp = to_iso(now)
    async with db.transaction() as conn:
        await conn.execute(
            "INSERT INTO users (email, created_at) VALUES (?, ?) "
            "ON CONFLICT(email) DO NOTHING",
            (email, stamp),
        )
        await conn.execute(
            "UPDATE users SET last_login_at = ? WHERE email = ?",
            (stamp, email),
        )
        cursor = await conn.execute("SELECT id, email FROM users WHERE email = ?", (email,))
        row = await cursor.fetchone()

    logger.info("user_login", user_id=row["id"])
    return User(id=row["id"], email=row["email"])

