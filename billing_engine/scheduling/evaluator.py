"""Hourly evaluation of every active billing schedule.

The evaluator pages through active schedules in bounded batches and, for
each tenant due at the tick, enqueues one :class:`BulkChargeJob`.  The page
being evaluated is an explicit :class:`SchedulePage` argument; nothing is
carried between ticks.

Isolation:

* a store error reading one page is logged and recorded, and the remaining
  pages are still evaluated;
* an invalid schedule row is a configuration defect, logged and skipped;
* an enqueue failure for one tenant never stops the others.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from billing_engine.errors import InvalidScheduleError
from billing_engine.jobs.messages import BulkChargeJob
from billing_engine.jobs.queue import JobQueue
from billing_engine.models.charge import EligibilityFilters
from billing_engine.models.schedule import BillingSchedule
from billing_engine.scheduling.calculator import LOOKBACK_WINDOW, charge_window, is_due, snap_to_hour
from billing_engine.state.database import get_session
from billing_engine.state.repository import BillingScheduleRepository

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


@dataclass(frozen=True)
class SchedulePage:
    """One bounded slice of the active schedules, in stable ``id`` order."""

    offset: int
    limit: int


def iter_pages(total: int, batch_size: int) -> Iterator[SchedulePage]:
    """Yield the pages covering *total* rows, *batch_size* at a time."""
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    for offset in range(0, total, batch_size):
        yield SchedulePage(offset=offset, limit=batch_size)


@dataclass
class TickResult:
    """Summary of one tick's evaluation."""

    tick: datetime
    evaluated: int = 0
    due: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    failed_pages: list[SchedulePage] = field(default_factory=list)
    failed_dispatch: list[str] = field(default_factory=list)
    not_accepted: list[str] = field(default_factory=list)
    rebills_requeued: list[str] = field(default_factory=list)
    failed_rebills: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.failed_pages or self.failed_dispatch or self.failed_rebills)


class ScheduleEvaluator:
    """Finds the tenants due at a tick and enqueues their bulk charges.

    Parameters
    ----------
    engine:
        Async engine for the state store.  Every page is read in its own
        session.
    queue:
        Destination for :class:`BulkChargeJob` messages.
    batch_size:
        Maximum schedules read per page.
    filters:
        Eligibility filters forwarded with every bulk charge.
    lookback:
        How far back each charge window reaches.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        queue: JobQueue,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        filters: EligibilityFilters | None = None,
        lookback: timedelta = LOOKBACK_WINDOW,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._batch_size = batch_size
        self._filters = filters or EligibilityFilters()
        self._lookback = lookback

    async def evaluate(self, now: datetime) -> TickResult:
        """Evaluate every active schedule against the tick containing *now*.

        Raises
        ------
        sqlalchemy.exc.SQLAlchemyError
            If the active schedules cannot be counted; the whole tick is
            then left to the substrate's retry.
        """
        tick = snap_to_hour(now)
        result = TickResult(tick=tick)

        async with get_session(self._engine) as session:
            total = await BillingScheduleRepository(session).count_active()

        for page in iter_pages(total, self._batch_size):
            await self.evaluate_page(tick, page, result)

        logger.info(
            "Tick %s: %d schedule(s) evaluated, %d due, %d invalid, %d failed page(s)",
            tick.isoformat(),
            result.evaluated,
            len(result.due),
            len(result.invalid),
            len(result.failed_pages),
        )
        return result

    async def evaluate_page(
        self,
        tick: datetime,
        page: SchedulePage,
        result: TickResult | None = None,
    ) -> TickResult:
        """Evaluate one page of schedules, folding the outcome into *result*."""
        result = result if result is not None else TickResult(tick=tick)

        try:
            async with get_session(self._engine) as session:
                rows = await BillingScheduleRepository(session).list_active_page(page.offset, page.limit)
                schedules = [(row.tenant_id, self._validate(row)) for row in rows]
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to read schedule page offset=%d limit=%d at tick %s: %s",
                page.offset,
                page.limit,
                tick.isoformat(),
                exc,
                exc_info=True,
            )
            result.failed_pages.append(page)
            return result

        for tenant_id, schedule in schedules:
            result.evaluated += 1
            if schedule is None:
                result.invalid.append(tenant_id)
                continue
            if not is_due(schedule, tick):
                continue
            await self._enqueue_bulk_charge(schedule, tick, result)

        return result

    @staticmethod
    def _validate(row: object) -> BillingSchedule | None:
        try:
            return BillingSchedule.model_validate(row)
        except ValidationError as exc:
            defect = InvalidScheduleError(
                getattr(row, "tenant_id", "?"),
                "; ".join(err["msg"] for err in exc.errors()),
            )
            logger.error("Configuration defect: %s", defect, extra={"tenant_id": defect.tenant_id})
            return None

    async def _enqueue_bulk_charge(self, schedule: BillingSchedule, tick: datetime, result: TickResult) -> None:
        job = BulkChargeJob(
            tenant_id=schedule.tenant_id,
            tick=tick,
            window=charge_window(schedule, tick, self._lookback),
            filters=self._filters,
        )
        try:
            accepted = await self._queue.enqueue(job)
        except Exception:
            logger.exception(
                "Failed to enqueue bulk charge for tenant=%s at tick %s",
                schedule.tenant_id,
                tick.isoformat(),
                extra={"tenant_id": schedule.tenant_id, "job_id": job.job_id},
            )
            result.failed_dispatch.append(schedule.tenant_id)
            return
        result.due.append(schedule.tenant_id)
        if not accepted:
            logger.warning("Bulk charge for tenant=%s at tick %s was not accepted", schedule.tenant_id, tick.isoformat())
            result.not_accepted.append(schedule.tenant_id)
