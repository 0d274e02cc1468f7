"""Re-issue the rebills that open dunning records still owe.

A scheduled rebill lives in the execution substrate only until it runs, and
an in-process substrate loses whatever it holds when the service restarts.
The state store keeps the durable copy: an open record whose
``next_attempt_at`` is set owes exactly one rebill for its current
``attempt_count``.  :class:`RebillRecovery` reads those records back and
enqueues their :class:`RebillJob` again.

Enqueueing twice is harmless.  The substrate drops a ``dedup_key`` it still
remembers, and the rebill dispatcher cancels a job whose record has moved
on or whose rebill already went out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncEngine

from billing_engine.jobs.messages import RebillJob
from billing_engine.jobs.queue import JobQueue
from billing_engine.models.dunning import DunningState
from billing_engine.state.database import get_session
from billing_engine.state.repository import PendingRebillRepository

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


@dataclass
class RecoveryResult:
    """Summary of one recovery pass, keyed by ``DunningKey`` strings."""

    enqueued: list[str] = field(default_factory=list)
    not_accepted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class RebillRecovery:
    """Pages through owing dunning records and re-enqueues their rebills.

    Parameters
    ----------
    engine:
        Async engine for the state store.  Every page is read in its own
        session, closed before anything is enqueued.
    queue:
        Destination for :class:`RebillJob` messages.
    batch_size:
        Maximum records read per page.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        queue: JobQueue,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._engine = engine
        self._queue = queue
        self._batch_size = batch_size

    async def enqueue_due(self, now: datetime) -> RecoveryResult:
        """Re-enqueue every rebill whose ``next_attempt_at`` is at or before *now*."""
        return await self._scan(now, due_before=now)

    async def enqueue_pending(self, now: datetime) -> RecoveryResult:
        """Re-enqueue every owed rebill; those not yet due keep their run time.

        Used at startup, when the substrate starts out empty.
        """
        return await self._scan(now, due_before=None)

    async def _scan(self, now: datetime, *, due_before: datetime | None) -> RecoveryResult:
        result = RecoveryResult()
        after_id = 0
        while True:
            async with get_session(self._engine) as session:
                rows = await PendingRebillRepository(session).list_pending(
                    after_id=after_id,
                    limit=self._batch_size,
                    due_before=due_before,
                )
                states = [DunningState.model_validate(row) for row in rows]

            for state in states:
                await self._enqueue(state, now, result)

            if len(states) < self._batch_size:
                break
            after_id = states[-1].id

        if result.enqueued or result.failed:
            logger.info(
                "Rebill recovery at %s: %d enqueued, %d not accepted, %d failed",
                now.isoformat(),
                len(result.enqueued),
                len(result.not_accepted),
                len(result.failed),
            )
        return result

    async def _enqueue(self, state: DunningState, now: datetime, result: RecoveryResult) -> None:
        key = str(state.key)
        origin_time = state.origin_time or state.last_failure_at
        if origin_time is None or state.next_attempt_at is None:
            logger.error("Dunning record %s owes a rebill but has no origin time; skipping", key)
            result.failed.append(key)
            return

        job = RebillJob(
            tenant_id=state.tenant_id,
            contract_id=state.contract_id,
            billing_cycle_index=state.billing_cycle_index,
            failure_reason=state.failure_reason,
            attempt_count=state.attempt_count,
            origin_time=origin_time,
        )
        run_at = state.next_attempt_at if state.next_attempt_at > now else None
        try:
            accepted = await self._queue.enqueue(job, run_at=run_at)
        except Exception:
            logger.exception(
                "Failed to re-enqueue rebill for %s",
                key,
                extra={"tenant_id": state.tenant_id, "job_id": job.job_id},
            )
            result.failed.append(key)
            return
        if accepted:
            result.enqueued.append(key)
        else:
            result.not_accepted.append(key)
