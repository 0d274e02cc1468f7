"""Shared fixtures for billing engine tests.

Provides a file-backed SQLite engine (aiosqlite) with all tables created,
a recording event bus, and factories for schedules and outcome reports.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from billing_engine.events import EventBus, EventPayload, EventType
from billing_engine.jobs.queue import NullJobQueue
from billing_engine.models.charge import ChargeOutcome, ChargeOutcomeReport
from billing_engine.state.database import get_session
from billing_engine.state.repository import BillingScheduleRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine

# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    """Provide an async engine backed by a fresh SQLite file."""
    eng = get_local_engine(tmp_path / "state.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session(engine):
    async with get_session(engine) as s:
        yield s


async def add_schedule(engine, tenant_id: str, hour: int = 10, timezone: str = "America/Toronto", active: bool = True):
    async with get_session(engine) as s:
        return await BillingScheduleRepository(s).upsert(tenant_id, hour, timezone, active)


# ---------------------------------------------------------------------------
# Queue and signals
# ---------------------------------------------------------------------------


@pytest.fixture
def null_queue() -> NullJobQueue:
    return NullJobQueue()


class RecordingBus(EventBus):
    """EventBus that also keeps every emitted payload."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[EventPayload] = []

        async def _record(payload: EventPayload) -> None:
            self.events.append(payload)

        self.register_handler(_record)

    def of_type(self, event_type: EventType) -> list[EventPayload]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def event_bus() -> RecordingBus:
    return RecordingBus()


# ---------------------------------------------------------------------------
# Report factory
# ---------------------------------------------------------------------------

BASE_TIME = datetime(2024, 3, 5, 15, 0, tzinfo=UTC)


def make_report(
    outcome: ChargeOutcome = ChargeOutcome.FAILURE,
    *,
    failure_reason: str | None = "INSUFFICIENT_FUNDS",
    billing_attempt_id: str = "attempt-1",
    occurred_at: datetime = BASE_TIME,
    tenant_id: str = "shop-1.example.com",
    contract_id: str = "gid://contract/1",
    billing_cycle_index: int = 3,
    **overrides: Any,
) -> ChargeOutcomeReport:
    return ChargeOutcomeReport(
        tenant_id=tenant_id,
        contract_id=contract_id,
        billing_cycle_index=billing_cycle_index,
        outcome=outcome,
        failure_reason=failure_reason if outcome is ChargeOutcome.FAILURE else overrides.pop("success_reason", None),
        billing_attempt_id=billing_attempt_id,
        occurred_at=occurred_at,
        **overrides,
    )
