"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_engine.state.database import engine_from_settings, get_engine, get_session, get_session_factory
from billing_engine.state.repository import (
    BillingScheduleRepository,
    BulkChargeDispatchRepository,
    DunningRepository,
    PendingRebillRepository,
)

__all__ = [
    "BillingScheduleRepository",
    "BulkChargeDispatchRepository",
    "DunningRepository",
    "PendingRebillRepository",
    "engine_from_settings",
    "get_engine",
    "get_session",
    "get_session_factory",
]
