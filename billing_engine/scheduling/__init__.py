"""Schedule arithmetic, hourly evaluation, and the tick source."""

from billing_engine.scheduling.calculator import (
    LOOKBACK_WINDOW,
    charge_window,
    end_of_local_day,
    is_due,
    snap_to_hour,
)
from billing_engine.scheduling.evaluator import ScheduleEvaluator, SchedulePage, TickResult, iter_pages
from billing_engine.scheduling.ticker import HourlyTicker, next_tick_after, seconds_until_next_tick

__all__ = [
    "LOOKBACK_WINDOW",
    "HourlyTicker",
    "ScheduleEvaluator",
    "SchedulePage",
    "TickResult",
    "charge_window",
    "end_of_local_day",
    "is_due",
    "iter_pages",
    "next_tick_after",
    "seconds_until_next_tick",
    "snap_to_hour",
]
