"""Unit tests for authproxy.utils.timeutil — UTC dates, reset countdown, ISO form."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from authproxy.utils.timeutil import (
    from_iso,
    seconds_until_utc_midnight,
    to_iso,
    utc_date,
)


class TestSecondsUntilMidnight:
    def test_thirty_seconds_before_midnight(self) -> None:
        now = datetime(2024, 5, 1, 23, 59, 30, tzinfo=timezone.utc)
        assert seconds_until_utc_midnight(now) == 30

    def test_fractional_seconds_are_floored(self) -> None:
        now = datetime(2024, 5, 1, 23, 59, 30, 700000, tzinfo=timezone.utc)
        assert seconds_until_utc_midnight(now) == 29

    def test_exactly_midnight_is_a_full_day(self) -> None:
        now = datetime(2024, 5, 2, 0, 0, 0, tzinfo=timezone.utc)
        assert seconds_until_utc_midnight(now) == 86400

    def test_non_utc_input_is_converted(self) -> None:
        # 01:59:30 at +02:00 is 23:59:30 UTC
        tz = timezone(timedelta(hours=2))
        now = datetime(2024, 5, 2, 1, 59, 30, tzinfo=tz)
        assert seconds_until_utc_midnight(now) == 30


class TestUtcDate:
    def test_date_uses_utc(self) -> None:
        tz = timezone(timedelta(hours=-5))
        # 21:00 at -05:00 is 02:00 UTC the next day
        assert utc_date(datetime(2024, 5, 1, 21, 0, tzinfo=tz)) == "2024-05-02"


class TestIsoForm:
    def test_fixed_width(self) -> None:
        stamp = to_iso(datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc))
        assert stamp == "2024-05-01T09:30:00.000000Z"

    def test_string_order_matches_time_order(self) -> None:
        base = datetime(2024, 5, 1, 9, 59, 59, 999999, tzinfo=timezone.utc)
        later = base + timedelta(microseconds=1)
        assert to_iso(base) < to_iso(later)

    def test_parse_back(self) -> None:
        moment = datetime(2024, 5, 1, 9, 30, 1, 250000, tzinfo=timezone.utc)
        assert from_iso(to_iso(moment)) == moment
