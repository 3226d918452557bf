"""SQLiteAuditBackend — append-only audit trail in the service database.

Writes the ``audits`` table created by ``authproxy.db``.  Rows are never
updated or deleted by the service; deleting a user sets ``user_id`` to NULL
(ON DELETE SET NULL) so the trail survives.
"""

from __future__ import annotations

import json
from typing import Any

import aiosqlite

from authproxy.audit.models import AuditEvent
from authproxy.audit.protocol import EventFilters
from authproxy.db import Database
from authproxy.errors import StorageError
from authproxy.utils.logger import get_logger
from authproxy.utils.timeutil import from_iso, to_iso

logger = get_logger(__name__)


def _row_to_audit_event(row: aiosqlite.Row) -> AuditEvent:
    return AuditEvent(
        id=row["id"],
        type=row["type"],
        user_id=row["user_id"],
        details=json.loads(row["details"]) if row["details"] else {},
        created_at=from_iso(row["created_at"]),
    )


def _build_where(filters: EventFilters) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if filters.type is not None:
        clauses.append("type = ?")
        params.append(filters.type)
    if filters.user_id is not None:
        clauses.append("user_id = ?")
        params.append(filters.user_id)
    if filters.since is not None:
        clauses.append("created_at >= ?")
        params.append(to_iso(filters.since))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class SQLiteAuditBackend:
    """Audit backend on top of the shared ``Database``.

    Usage:
        backend = SQLiteAuditBackend(db)
        await backend.log_event(AuditEvent(type="proxy_hit", user_id=7, details={...}))
        events = await backend.query_events(EventFilters(user_id=7))
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def log_event(self, event: AuditEvent) -> None:
        try:
            async with self._db.connect() as conn:
                await conn.execute(
                    "INSERT INTO audits (user_id, type, details, created_at) VALUES (?, ?, ?, ?)",
                    (
                        event.user_id,
                        event.type,
                        json.dumps(event.details, separators=(",", ":")),
                        to_iso(event.created_at),
                    ),
                )
        except StorageError as exc:
            logger.error(
                "audit_write_failed",
                audit_type=event.type,
                user_id=event.user_id,
                error=exc.message,
            )

    async def query_events(self, filters: EventFilters) -> list[AuditEvent]:
        where, params = _build_where(filters)
        async with self._db.connect() as conn:
            cursor = await conn.execute(
                f"SELECT id, user_id, type, details, created_at FROM audits {where} "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, filters.limit, filters.offset),
            )
            rows = await cursor.fetchall()
        return [_row_to_audit_event(row) for row in rows]

    async def count_events(self, filters: EventFilters) -> int:
        where, params = _build_where(filters)
        async with self._db.connect() as conn:
            cursor = await conn.execute(f"SELECT COUNT(*) FROM audits {where}", params)
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def close(self) -> None:
        # Connections are per-operation; nothing to release.
        pass
