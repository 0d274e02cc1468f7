"""Pure schedule arithmetic: is a tenant due at a tick, and what window to charge.

Ticks are UTC top-of-hour instants.  A schedule is due at exactly one tick per
local calendar day: the first tick whose local wall-clock hour is at or past
the preferred hour.  On ordinary days that is the tick at ``hour:00`` local.
When a DST jump skips the preferred hour, the first tick after the gap fires
instead.  When a DST fall-back repeats it, only the first occurrence fires
(the repeat carries ``fold=1``).

No I/O and no state: correctness across ticks comes from evaluating the
current tick against the previous one.
"""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

from billing_engine.models.schedule import BillingSchedule, ChargeWindow

LOOKBACK_WINDOW = timedelta(days=2)

_TICK_INTERVAL = timedelta(hours=1)
_END_OF_DAY = time(23, 59, 59)


def snap_to_hour(instant: datetime) -> datetime:
    """Return the UTC top-of-hour at or before *instant*.

    Raises
    ------
    ValueError
        If *instant* is naive; local wall time cannot be derived from it.
    """
    if instant.tzinfo is None:
        raise ValueError(f"Expected a timezone-aware instant, got naive {instant.isoformat()}")
    return instant.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def is_due(schedule: BillingSchedule, now_utc: datetime) -> bool:
    """Return whether *schedule* should bill at the tick containing *now_utc*."""
    if not schedule.active:
        return False

    tick = snap_to_hour(now_utc)
    zone = schedule.zone
    local = tick.astimezone(zone)

    if local.fold or local.hour < schedule.hour:
        return False

    previous = (tick - _TICK_INTERVAL).astimezone(zone)
    return previous.date() != local.date() or previous.hour < schedule.hour


def end_of_local_day(instant: datetime, zone: ZoneInfo) -> datetime:
    """Return 23:59:59 of *instant*'s local calendar day in *zone*, as UTC."""
    local_date = instant.astimezone(zone).date()
    return datetime.combine(local_date, _END_OF_DAY, tzinfo=zone).astimezone(UTC)


def charge_window(
    schedule: BillingSchedule,
    now_utc: datetime,
    lookback: timedelta = LOOKBACK_WINDOW,
) -> ChargeWindow:
    """Return the expected-billing-date range to charge at this tick.

    ``start`` reaches back *lookback* so cycles missed during scheduler
    downtime or a timezone change are recovered.  ``end`` stops at the end of
    the tenant's current local day so cycles due tomorrow are not charged
    early.
    """
    tick = snap_to_hour(now_utc)
    end = max(end_of_local_day(tick, schedule.zone), tick)
    return ChargeWindow(start=tick - lookback, end=end)
