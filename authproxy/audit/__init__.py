"""Audit trail package.

Public API:
  - AuditEvent          — one audit record
  - AuditBackend        — backend Protocol
  - EventFilters        — query filters
  - NullAuditBackend    — no-op backend
  - SQLiteAuditBackend  — ``audits`` table backend
"""

from __future__ import annotations

from authproxy.audit.models import AuditEvent
from authproxy.audit.protocol import AuditBackend, EventFilters, NullAuditBackend
from authproxy.audit.sqlite_backend import SQLiteAuditBackend

__all__ = [
    "AuditBackend",
    "AuditEvent",
    "EventFilters",
    "NullAuditBackend",
    "SQLiteAuditBackend",
]
