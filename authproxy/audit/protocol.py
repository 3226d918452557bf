"""AuditBackend Protocol + EventFilters dataclass.

Layout:
    models.py         — AuditEvent + type aliases
    protocol.py       — AuditBackend Protocol + EventFilters + NullAuditBackend
    sqlite_backend.py — SQLiteAuditBackend writing the ``audits`` table
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from authproxy.audit.models import AuditEvent
from authproxy.utils.logger import get_logger

logger = get_logger(__name__)


# ─── EventFilters ─────────────────────────────────────────────────────────────


@dataclass
class EventFilters:
    """Query filters for AuditBackend.query_events() and count_events().

    All fields are optional.  An empty EventFilters() returns the newest
    50 events.
    """

    type: Optional[str] = None
    user_id: Optional[int] = None
    since: Optional[datetime] = None
    """Include events with created_at >= since (UTC)."""
    limit: int = 50
    offset: int = 0


# ─── AuditBackend Protocol ────────────────────────────────────────────────────


@runtime_checkable
class AuditBackend(Protocol):
    """Pluggable audit backend interface.

    log_event() is awaited at call sites so the entry exists before the
    request proceeds, and it must never raise: a failed audit write is logged,
    not surfaced to the caller.
    """

    async def log_event(self, event: AuditEvent) -> None:
        ...

    async def query_events(self, filters: EventFilters) -> list[AuditEvent]:
        """Matching events, newest first."""
        ...

    async def count_events(self, filters: EventFilters) -> int:
        ...

    async def close(self) -> None:
        ...


# ─── NullAuditBackend ────────────────────────────────────────────────────────


class NullAuditBackend:
    """No-op AuditBackend, used before startup completes and in tests."""

    async def log_event(self, event: AuditEvent) -> None:
        logger.debug("NullAuditBackend.log_event", audit_type=event.type)

    async def query_events(self, filters: EventFilters) -> list[AuditEvent]:
        return []

    async def count_events(self, filters: EventFilters) -> int:
        return 0

    async def close(self) -> None:
        pass


assert isinstance(NullAuditBackend(), AuditBackend), (
    "NullAuditBackend does not satisfy AuditBackend protocol — implementation error"
)
