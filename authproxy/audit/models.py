"""AuditEvent dataclass and audit type names.

Every admission decision, login step and key-management action produces one
AuditEvent.  ``details`` is a small JSON-serialisable mapping.

``details`` must never contain full API keys, OTP codes or hashes; key
prefixes, key ids, paths and reasons are fine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from authproxy.utils.timeutil import utc_now

# ─── Type Aliases ─────────────────────────────────────────────────────────────

AuditType = Literal[
    "proxy_block",
    "proxy_hit",
    "otp_send",
    "otp_send_block",
    "otp_send_error",
    "otp_verify",
    "otp_verify_fail",
    "key_create",
    "key_revoke",
    "key_revoke_fail",
    "logout",
]

#: Reasons recorded on ``proxy_block`` events.
BlockReason = Literal["docs", "missing_key", "format", "not_found", "mismatch", "quota"]


@dataclass
class AuditEvent:
    type: AuditType
    user_id: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None
    """Row id; set only on events read back from storage."""
