"""Tests for the pure schedule calculator.

Covers:
- snap_to_hour: UTC normalisation, naive rejection
- is_due: inactive schedules, the Toronto 10:00 scenario, exactly one
  due tick per local day across spring-forward and fall-back
- charge_window: lookback start, end-of-local-day end, end >= tick
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from billing_engine.models.schedule import BillingSchedule
from billing_engine.scheduling.calculator import (
    LOOKBACK_WINDOW,
    charge_window,
    end_of_local_day,
    is_due,
    snap_to_hour,
)


def _ticks_of_local_day(day: date, zone: ZoneInfo) -> list[datetime]:
    """Every UTC top-of-hour tick whose local date is *day*."""
    start = datetime.combine(day, time(0), tzinfo=zone).astimezone(UTC) - timedelta(hours=2)
    end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=zone).astimezone(UTC) + timedelta(hours=2)
    tick = snap_to_hour(start)
    ticks = []
    while tick <= end:
        if tick.astimezone(zone).date() == day:
            ticks.append(tick)
        tick += timedelta(hours=1)
    return ticks


# ---------------------------------------------------------------------------
# snap_to_hour
# ---------------------------------------------------------------------------


class TestSnapToHour:
    def test_truncates_to_top_of_hour(self):
        instant = datetime(2024, 3, 5, 15, 42, 17, 123, tzinfo=UTC)
        assert snap_to_hour(instant) == datetime(2024, 3, 5, 15, 0, tzinfo=UTC)

    def test_converts_offset_instants_to_utc(self):
        instant = datetime(2024, 3, 5, 10, 30, tzinfo=ZoneInfo("America/Toronto"))
        snapped = snap_to_hour(instant)
        assert snapped == datetime(2024, 3, 5, 15, 0, tzinfo=UTC)
        assert snapped.utcoffset() == timedelta(0)

    def test_naive_instant_rejected(self):
        with pytest.raises(ValueError, match="naive"):
            snap_to_hour(datetime(2024, 3, 5, 15, 0))


# ---------------------------------------------------------------------------
# is_due
# ---------------------------------------------------------------------------


class TestIsDue:
    def test_toronto_ten_am_on_standard_time_day(self):
        schedule = BillingSchedule(tenant_id="shop", hour=10, timezone="America/Toronto")
        assert is_due(schedule, datetime(2024, 1, 15, 15, 0, tzinfo=UTC)) is True
        assert is_due(schedule, datetime(2024, 1, 15, 14, 0, tzinfo=UTC)) is False

    def test_minutes_past_the_hour_snap_to_the_tick(self):
        schedule = BillingSchedule(tenant_id="shop", hour=10, timezone="America/Toronto")
        assert is_due(schedule, datetime(2024, 1, 15, 15, 59, 59, tzinfo=UTC)) is True

    def test_daylight_time_shifts_the_utc_tick(self):
        schedule = BillingSchedule(tenant_id="shop", hour=10, timezone="America/Toronto")
        assert is_due(schedule, datetime(2024, 7, 15, 14, 0, tzinfo=UTC)) is True
        assert is_due(schedule, datetime(2024, 7, 15, 15, 0, tzinfo=UTC)) is False

    @pytest.mark.parametrize("hour", [0, 10, 23])
    def test_inactive_schedule_never_due(self, hour: int):
        schedule = BillingSchedule(tenant_id="shop", hour=hour, timezone="Europe/London", active=False)
        tick = datetime(2024, 3, 29, 0, 0, tzinfo=UTC)
        for _ in range(24 * 5):
            assert is_due(schedule, tick) is False
            tick += timedelta(hours=1)

    @pytest.mark.parametrize(
        ("timezone", "day"),
        [
            ("America/Toronto", date(2024, 3, 10)),  # spring forward
            ("America/Toronto", date(2024, 11, 3)),  # fall back
            ("America/Toronto", date(2024, 6, 1)),
            ("Europe/London", date(2024, 3, 31)),
            ("Europe/London", date(2024, 10, 27)),
            ("Asia/Kolkata", date(2024, 3, 10)),
            ("Australia/Lord_Howe", date(2024, 4, 7)),
        ],
    )
    def test_exactly_one_due_tick_per_local_day(self, timezone: str, day: date):
        zone = ZoneInfo(timezone)
        for hour in range(24):
            schedule = BillingSchedule(tenant_id="shop", hour=hour, timezone=timezone)
            due = [t for t in _ticks_of_local_day(day, zone) if is_due(schedule, t)]
            assert len(due) == 1, f"{timezone} {day} hour={hour}: due at {due}"

    def test_skipped_hour_fires_after_the_gap(self):
        # 02:00 does not exist in Toronto on 2024-03-10; 03:00 EDT is 07:00 UTC.
        schedule = BillingSchedule(tenant_id="shop", hour=2, timezone="America/Toronto")
        assert is_due(schedule, datetime(2024, 3, 10, 7, 0, tzinfo=UTC)) is True
        assert is_due(schedule, datetime(2024, 3, 10, 6, 0, tzinfo=UTC)) is False

    def test_repeated_hour_fires_on_first_occurrence_only(self):
        # 01:00 happens twice in Toronto on 2024-11-03: 05:00 UTC (EDT) and 06:00 UTC (EST).
        schedule = BillingSchedule(tenant_id="shop", hour=1, timezone="America/Toronto")
        assert is_due(schedule, datetime(2024, 11, 3, 5, 0, tzinfo=UTC)) is True
        assert is_due(schedule, datetime(2024, 11, 3, 6, 0, tzinfo=UTC)) is False


# ---------------------------------------------------------------------------
# charge_window
# ---------------------------------------------------------------------------


class TestChargeWindow:
    def test_start_is_exactly_lookback_before_tick(self):
        schedule = BillingSchedule(tenant_id="shop", hour=10, timezone="America/Toronto")
        window = charge_window(schedule, datetime(2024, 1, 15, 15, 20, tzinfo=UTC))
        assert window.start == datetime(2024, 1, 13, 15, 0, tzinfo=UTC)
        assert LOOKBACK_WINDOW == timedelta(days=2)

    def test_end_is_end_of_local_day(self):
        schedule = BillingSchedule(tenant_id="shop", hour=10, timezone="America/Toronto")
        window = charge_window(schedule, datetime(2024, 1, 15, 15, 0, tzinfo=UTC))
        # 23:59:59 EST is 04:59:59 UTC the next day.
        assert window.end == datetime(2024, 1, 16, 4, 59, 59, tzinfo=UTC)

    def test_custom_lookback(self):
        schedule = BillingSchedule(tenant_id="shop", hour=10, timezone="UTC")
        tick = datetime(2024, 1, 15, 10, 0, tzinfo=UTC)
        window = charge_window(schedule, tick, lookback=timedelta(hours=6))
        assert window.start == tick - timedelta(hours=6)

    @pytest.mark.parametrize("timezone", ["America/Toronto", "Europe/London", "Pacific/Kiritimati", "Pacific/Pago_Pago"])
    def test_end_never_before_tick(self, timezone: str):
        schedule = BillingSchedule(tenant_id="shop", hour=0, timezone=timezone)
        tick = datetime(2024, 3, 8, 0, 0, tzinfo=UTC)
        for _ in range(24 * 4):
            window = charge_window(schedule, tick)
            assert window.end >= tick
            assert window.start == tick - LOOKBACK_WINDOW
            tick += timedelta(hours=1)

    def test_end_of_local_day_helper(self):
        zone = ZoneInfo("Europe/London")
        instant = datetime(2024, 7, 1, 22, 30, tzinfo=UTC)  # 23:30 BST
        assert end_of_local_day(instant, zone) == datetime(2024, 7, 1, 22, 59, 59, tzinfo=UTC)
