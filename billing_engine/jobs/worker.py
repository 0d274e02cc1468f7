"""Routes job messages to the component that executes them."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncEngine

from billing_engine.charging.client import UpstreamBillingClient
from billing_engine.charging.dispatchers import BulkChargeDispatcher, DispatchResult, RebillDispatcher
from billing_engine.config import BillingSettings
from billing_engine.dunning.engine import DunningEngine, DunningPolicy, DunningResult
from billing_engine.dunning.recovery import RebillRecovery
from billing_engine.events import EventBus, get_event_bus
from billing_engine.jobs.messages import BulkChargeJob, ChargeOutcomeJob, EvaluateSchedulesJob, Job, RebillJob
from billing_engine.jobs.queue import JobQueue
from billing_engine.scheduling.evaluator import ScheduleEvaluator, TickResult

logger = logging.getLogger(__name__)


class BillingWorker:
    """Executes every job kind against the shared engine, queue and client.

    Components are built once; each keeps no state between jobs, so one
    worker serves all of a queue's worker tasks.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        queue: JobQueue,
        client: UpstreamBillingClient,
        settings: BillingSettings,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        bus = event_bus or get_event_bus()
        self.evaluator = ScheduleEvaluator(
            engine,
            queue,
            batch_size=settings.schedule_batch_size,
            lookback=timedelta(days=settings.lookback_days),
        )
        self.bulk_dispatcher = BulkChargeDispatcher(engine, client, event_bus=bus)
        self.rebill_dispatcher = RebillDispatcher(engine, client, event_bus=bus)
        self.dunning = DunningEngine(
            engine,
            queue,
            policy=DunningPolicy.from_settings(settings),
            event_bus=bus,
        )
        self.recovery = RebillRecovery(engine, queue, batch_size=settings.schedule_batch_size)

    async def handle(self, job: Job) -> TickResult | DispatchResult | DunningResult:
        logger.debug("Handling %s job %s", job.kind, job.job_id[:8])
        if isinstance(job, EvaluateSchedulesJob):
            return await self.run_tick(job.tick)
        if isinstance(job, BulkChargeJob):
            return await self.bulk_dispatcher.dispatch(job)
        if isinstance(job, RebillJob):
            return await self.rebill_dispatcher.dispatch(job)
        if isinstance(job, ChargeOutcomeJob):
            return await self.dunning.handle_report(job.report)
        raise TypeError(f"Unsupported job type: {type(job).__name__}")

    async def run_tick(self, now: datetime) -> TickResult:
        """Evaluate schedules at *now*, then re-enqueue the rebills already due.

        Raises
        ------
        sqlalchemy.exc.SQLAlchemyError
            If the schedules cannot be counted or owed rebills cannot be read.
        """
        result = await self.evaluator.evaluate(now)
        recovered = await self.recovery.enqueue_due(result.tick)
        result.rebills_requeued = recovered.enqueued
        result.failed_rebills = recovered.failed
        return result
