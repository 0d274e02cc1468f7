"""Execution substrate backends.

Every backend implements :meth:`JobQueue.enqueue`, which accepts a job (and
optionally an earliest run time) and reports whether it was accepted.
Delivery is at-least-once: handlers must tolerate seeing a job twice.

Three backends are provided:

* :class:`InlineJobQueue` -- runs due jobs synchronously inside
  ``enqueue``; delayed jobs wait until :meth:`InlineJobQueue.run_due`.
* :class:`NullJobQueue` -- accepts and records jobs without running them.
* :class:`AsyncioJobQueue` -- in-process worker tasks with delayed delivery,
  duplicate suppression, and retry of transient errors.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError

from billing_engine.errors import TransportError
from billing_engine.jobs.messages import Job
from billing_engine.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[object]]

J = TypeVar("J")

# Infrastructure errors that the substrate retries.  Anything else escaping a
# handler is a defect and is logged without retry.
RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    TransportError,
    OperationalError,
    InterfaceError,
)


class JobQueue(ABC):
    """Contract every execution backend fulfils."""

    def __init__(
        self,
        handler: JobHandler | None = None,
        *,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._handler = handler
        self._retry_config = retry_config or RetryConfig()

    def bind(self, handler: JobHandler) -> None:
        """Attach the handler that executes jobs."""
        self._handler = handler

    @abstractmethod
    async def enqueue(self, job: Job, *, run_at: datetime | None = None) -> bool:
        """Submit *job*, to run no earlier than *run_at*.  Returns ``True`` if accepted."""

    async def _execute(self, job: Job) -> None:
        if self._handler is None:
            raise RuntimeError("JobQueue has no handler bound; call bind() first")
        handler = self._handler
        await async_retry_with_backoff(
            lambda: handler(job),
            self._retry_config,
            RETRYABLE_EXCEPTIONS,
            label=f"{job.kind} job {job.job_id[:8]}",
        )


class NullJobQueue(JobQueue):
    """Records every accepted job and never runs anything."""

    def __init__(self) -> None:
        super().__init__()
        self.enqueued: list[tuple[Job, datetime | None]] = []

    async def enqueue(self, job: Job, *, run_at: datetime | None = None) -> bool:
        self.enqueued.append((job, run_at))
        return True

    def jobs_of(self, job_type: type[J]) -> list[J]:
        return [job for job, _ in self.enqueued if isinstance(job, job_type)]


class InlineJobQueue(JobQueue):
    """Runs jobs synchronously in the caller's task.

    Jobs whose ``run_at`` lies in the future are held back in
    :attr:`deferred` until :meth:`run_due` is called with a later instant,
    so a caller's transaction always commits before its follow-up runs.
    """

    def __init__(
        self,
        handler: JobHandler | None = None,
        *,
        retry_config: RetryConfig | None = None,
    ) -> None:
        super().__init__(handler, retry_config=retry_config)
        self.deferred: list[tuple[datetime, Job]] = []

    async def enqueue(self, job: Job, *, run_at: datetime | None = None) -> bool:
        if run_at is not None and run_at > datetime.now(UTC):
            self.deferred.append((run_at, job))
            logger.debug("Deferred %s job %s until %s", job.kind, job.job_id[:8], run_at.isoformat())
            return True
        return await self._run_now(job)

    async def run_due(self, now: datetime) -> int:
        """Run every deferred job whose ``run_at`` is at or before *now*."""
        due = sorted(((at, job) for at, job in self.deferred if at <= now), key=lambda item: item[0])
        self.deferred = [(at, job) for at, job in self.deferred if at > now]
        for _, job in due:
            await self._run_now(job)
        return len(due)

    async def _run_now(self, job: Job) -> bool:
        try:
            await self._execute(job)
        except Exception:
            logger.exception("Inline %s job %s failed", job.kind, job.job_id[:8])
            return False
        return True


class AsyncioJobQueue(JobQueue):
    """In-process queue drained by a fixed pool of asyncio worker tasks.

    Parameters
    ----------
    handler:
        Coroutine function executing one job.
    concurrency:
        Number of worker tasks.
    retry_config:
        Backoff applied to :data:`RETRYABLE_EXCEPTIONS`.
    dedup_capacity:
        How many recently accepted ``dedup_key`` values are remembered.
        A job whose key is remembered is rejected as a duplicate.
    """

    def __init__(
        self,
        handler: JobHandler | None = None,
        *,
        concurrency: int = 4,
        retry_config: RetryConfig | None = None,
        dedup_capacity: int = 10_000,
    ) -> None:
        super().__init__(handler, retry_config=retry_config)
        self._concurrency = concurrency
        self._dedup_capacity = dedup_capacity
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._recent: OrderedDict[str, None] = OrderedDict()
        self._workers: list[asyncio.Task[None]] = []
        self._timers: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            logger.warning("AsyncioJobQueue already running; ignoring start()")
            return
        self._workers = [asyncio.create_task(self._work(i)) for i in range(self._concurrency)]
        logger.info("AsyncioJobQueue started with %d worker(s)", self._concurrency)

    async def stop(self) -> None:
        """Cancel workers and pending delayed deliveries."""
        tasks = [*self._workers, *self._timers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._timers.clear()
        logger.info("AsyncioJobQueue stopped")

    async def join(self) -> None:
        """Wait until every immediately runnable job has been processed."""
        await self._queue.join()

    async def enqueue(self, job: Job, *, run_at: datetime | None = None) -> bool:
        key = job.dedup_key
        if key in self._recent:
            logger.info("Dropping duplicate %s job (key=%s)", job.kind, key)
            return False
        self._remember(key)

        delay = (run_at - datetime.now(UTC)).total_seconds() if run_at is not None else 0.0
        if delay > 0:
            timer = asyncio.create_task(self._deliver_later(job, delay))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
        else:
            self._queue.put_nowait(job)
        return True

    def _remember(self, key: str) -> None:
        self._recent[key] = None
        while len(self._recent) > self._dedup_capacity:
            self._recent.popitem(last=False)

    async def _deliver_later(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(job)

    async def _work(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._execute(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Forget the key so a redelivery of the same unit of work is accepted.
                self._recent.pop(job.dedup_key, None)
                logger.exception(
                    "Worker %d: %s job %s failed",
                    index,
                    job.kind,
                    job.job_id[:8],
                    extra={"job_id": job.job_id, "job_kind": job.kind},
                )
            finally:
                self._queue.task_done()
