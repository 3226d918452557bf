"""Per-user daily request counters, partitioned by UTC calendar date.

Counters are created lazily on the first increment of a day and never reset;
a new date simply starts a new row.  There is no background reset job.

Two enforcement styles are offered:

  soft (default)
      ``is_over_limit()`` then ``increment_today()``.  Two concurrent requests
      at ``limit - 1`` can both pass, overshooting by at most the number of
      in-flight requests.

  hard
      ``increment_with_ceiling()`` performs the check and the increment in a
      single conditional UPSERT, so the stored count never exceeds the limit.
"""

from __future__ import annotations

from typing import Optional

from authproxy.db import Database
from authproxy.utils.logger import get_logger

logger = get_logger(__name__)


class QuotaTracker:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_count(self, user_id: int, today: str) -> int:
        async with self._db.connect() as conn:
            cursor = await conn.execute(
                "SELECT count FROM usage_daily WHERE user_id = ? AND date_utc = ?",
                (user_id, today),
            )
            row = await cursor.fetchone()
        return row["count"] if row else 0

    async def is_over_limit(self, user_id: int, limit: int, today: str) -> bool:
        return await self.get_count(user_id, today) >= limit

    async def increment_today(self, user_id: int, today: str) -> int:
        """Add one to today's counter, creating it at 1.  Returns the new count."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO usage_daily (user_id, date_utc, count) VALUES (?, ?, 1) "
                "ON CONFLICT(user_id, date_utc) DO UPDATE SET count = count + 1 "
                "RETURNING count",
                (user_id, today),
            )
            row = await cursor.fetchone()
        return row["count"]

    async def increment_with_ceiling(self, user_id: int, today: str, limit: int) -> Optional[int]:
        """Atomically increment unless the counter already reached ``limit``.

        Returns:
            The new count, or None when the ceiling was already reached.
        """
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO usage_daily (user_id, date_utc, count) "
                "SELECT ?, ?, 1 WHERE ? > 0 "
                "ON CONFLICT(user_id, date_utc) DO UPDATE SET count = count + 1 "
                "WHERE usage_daily.count < ? "
                "RETURNING count",
                (user_id, today, limit, limit),
            )
            row = await cursor.fetchone()
        if row is None:
            logger.info("quota_ceiling_reached", user_id=user_id, date_utc=today, limit=limit)
            return None
        return row["count"]
