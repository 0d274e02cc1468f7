"""Background task that emits the hourly evaluation tick.

Sleeps until the next UTC top of hour, then enqueues an
:class:`EvaluateSchedulesJob` for that tick.  The job carries the tick
instant, so a late wake-up still evaluates the intended hour.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import InterfaceError, OperationalError

from billing_engine.errors import TransportError
from billing_engine.jobs.messages import EvaluateSchedulesJob
from billing_engine.jobs.queue import JobQueue
from billing_engine.scheduling.calculator import snap_to_hour

logger = logging.getLogger(__name__)

_TICK = timedelta(hours=1)


def next_tick_after(now: datetime) -> datetime:
    """Return the first UTC top of hour strictly after *now*."""
    return snap_to_hour(now) + _TICK


def seconds_until_next_tick(now: datetime) -> float:
    return (next_tick_after(now) - now).total_seconds()


class HourlyTicker:
    """AsyncIO background task producing one evaluation job per hour.

    Parameters
    ----------
    queue:
        Where :class:`EvaluateSchedulesJob` messages are enqueued.
    clock:
        Returns the current aware instant; tests substitute a fake.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._queue = queue
        self._clock = clock
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the ticker loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the ticker background task."""
        if self._running:
            logger.warning("HourlyTicker already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("HourlyTicker started")

    async def stop(self) -> None:
        """Stop the ticker gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("HourlyTicker stopped")

    async def fire(self, tick: datetime) -> bool:
        """Enqueue the evaluation job for *tick*."""
        job = EvaluateSchedulesJob(tick=snap_to_hour(tick))
        accepted = await self._queue.enqueue(job)
        logger.info("Tick %s enqueued (accepted=%s)", job.tick.isoformat(), accepted)
        return accepted

    async def _run_loop(self) -> None:
        while self._running:
            now = self._clock()
            await asyncio.sleep(seconds_until_next_tick(now))
            try:
                await self.fire(next_tick_after(now))
            except asyncio.CancelledError:
                raise
            except (TransportError, OperationalError, InterfaceError) as exc:
                logger.error("HourlyTicker failed to enqueue tick: %s", exc, exc_info=True)
