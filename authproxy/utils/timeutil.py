"""UTC time helpers shared by the OTP, key, quota and audit modules.

All persisted timestamps use one fixed-width ISO-8601 form
(``2024-05-01T09:30:00.000000Z``) so that SQL string comparison orders rows
chronologically.  Usage counters are partitioned by the UTC calendar date
(``YYYY-MM-DD``).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
DATE_FORMAT = "%Y-%m-%d"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Render an aware (or naive-UTC) datetime in the persisted timestamp form."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(ISO_FORMAT)


def from_iso(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def utc_date(moment: datetime) -> str:
    """Return the UTC calendar date of ``moment`` as ``YYYY-MM-DD``."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(DATE_FORMAT)


def seconds_until_utc_midnight(moment: datetime) -> int:
    """Whole seconds (floored) from ``moment`` to the next UTC midnight.

    At 23:59:30.700 this returns 29; exactly at midnight it returns 86400.
    """
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    start_of_day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    next_midnight = start_of_day + timedelta(days=1)
    return int((next_midnight - moment).total_seconds() // 1)
