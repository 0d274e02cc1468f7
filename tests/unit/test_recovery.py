"""Tests for RebillRecovery and the startup hook that runs it."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from billing_engine.api.main import recover_pending_rebills
from billing_engine.dunning.recovery import RebillRecovery
from billing_engine.jobs.messages import Job, RebillJob
from billing_engine.jobs.queue import AsyncioJobQueue, NullJobQueue
from billing_engine.state.database import get_session
from billing_engine.state.repository import DunningRepository

TENANT = "shop-1.example.com"
NOW = datetime(2024, 3, 5, 15, 0, tzinfo=UTC)
ORIGIN = NOW - timedelta(days=2)


async def _owe(engine, contract_id: str, next_attempt_at: datetime | None, *, attempt_count: int = 1, **values):
    async with get_session(engine) as session:
        repo = DunningRepository(session, TENANT)
        record = await repo.get_or_create(contract_id, 3, "INSUFFICIENT_FUNDS", origin_time=ORIGIN)
        await repo.compare_and_set(
            record.id,
            0,
            attempt_count=attempt_count,
            next_attempt_at=next_attempt_at,
            last_failure_at=ORIGIN,
            **values,
        )


class _FlakyQueue(NullJobQueue):
    """Raises for one contract, records everything else."""

    def __init__(self, failing_contract: str) -> None:
        super().__init__()
        self._failing_contract = failing_contract

    async def enqueue(self, job: Job, *, run_at: datetime | None = None) -> bool:
        if isinstance(job, RebillJob) and job.contract_id == self._failing_contract:
            raise RuntimeError("queue unavailable")
        return await super().enqueue(job, run_at=run_at)


class TestEnqueueDue:
    @pytest.mark.asyncio
    async def test_only_due_rebills_are_enqueued(self, engine, null_queue):
        await _owe(engine, "c-due", NOW - timedelta(hours=1), attempt_count=2)
        await _owe(engine, "c-later", NOW + timedelta(hours=1))

        result = await RebillRecovery(engine, null_queue).enqueue_due(NOW)

        assert result.enqueued == [f"{TENANT}/c-due/3/INSUFFICIENT_FUNDS"]
        [(job, run_at)] = null_queue.enqueued
        assert isinstance(job, RebillJob)
        assert job.contract_id == "c-due"
        assert job.attempt_count == 2
        assert job.origin_time == ORIGIN
        assert run_at is None

    @pytest.mark.asyncio
    async def test_completed_and_sent_records_are_left_alone(self, engine, null_queue):
        await _owe(engine, "c-resolved", NOW, completed_at=NOW, completed_reason="RESOLVED")
        await _owe(engine, "c-sent", None)

        result = await RebillRecovery(engine, null_queue).enqueue_due(NOW)

        assert result.enqueued == []
        assert null_queue.enqueued == []

    @pytest.mark.asyncio
    async def test_pages_through_every_owing_record(self, engine, null_queue):
        for n in range(5):
            await _owe(engine, f"c-{n}", NOW)

        result = await RebillRecovery(engine, null_queue, batch_size=2).enqueue_due(NOW)

        assert len(result.enqueued) == 5
        assert sorted(job.contract_id for job in null_queue.jobs_of(RebillJob)) == [f"c-{n}" for n in range(5)]

    @pytest.mark.asyncio
    async def test_enqueue_failure_does_not_stop_the_pass(self, engine):
        await _owe(engine, "c-1", NOW)
        await _owe(engine, "c-2", NOW)
        queue = _FlakyQueue("c-1")

        result = await RebillRecovery(engine, queue).enqueue_due(NOW)

        assert result.failed == [f"{TENANT}/c-1/3/INSUFFICIENT_FUNDS"]
        assert [job.contract_id for job in queue.jobs_of(RebillJob)] == ["c-2"]

    def test_rejects_non_positive_batch_size(self, null_queue):
        with pytest.raises(ValueError, match="batch_size"):
            RebillRecovery(SimpleNamespace(), null_queue, batch_size=0)


class TestEnqueuePending:
    @pytest.mark.asyncio
    async def test_future_rebills_keep_their_run_time(self, engine, null_queue):
        later = NOW + timedelta(days=1)
        await _owe(engine, "c-due", NOW - timedelta(minutes=5))
        await _owe(engine, "c-later", later)

        result = await RebillRecovery(engine, null_queue).enqueue_pending(NOW)

        assert len(result.enqueued) == 2
        run_times = {job.contract_id: run_at for job, run_at in null_queue.enqueued}
        assert run_times == {"c-due": None, "c-later": later}

    @pytest.mark.asyncio
    async def test_restarted_queue_gets_the_delayed_rebill_again(self, engine):
        now = datetime.now(UTC)
        await _owe(engine, "c-1", now + timedelta(hours=6))

        before_restart = AsyncioJobQueue()
        first = await RebillRecovery(engine, before_restart).enqueue_pending(now)
        again = await RebillRecovery(engine, before_restart).enqueue_pending(now)
        await before_restart.stop()

        after_restart = NullJobQueue()
        reissued = await RebillRecovery(engine, after_restart).enqueue_pending(now)

        assert len(first.enqueued) == 1
        assert again.not_accepted == first.enqueued
        assert reissued.enqueued == first.enqueued
        [(job, run_at)] = after_restart.enqueued
        assert job.contract_id == "c-1"
        assert run_at == now + timedelta(hours=6)


class TestStartupRecovery:
    @pytest.mark.asyncio
    async def test_store_error_is_logged_not_raised(self, caplog):
        recovery = SimpleNamespace(
            enqueue_pending=AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("db down")))
        )
        with caplog.at_level(logging.ERROR, logger="billing_engine.api.main"):
            await recover_pending_rebills(SimpleNamespace(recovery=recovery))

        assert "Could not recover owed rebills" in caplog.text
        recovery.enqueue_pending.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_owed_rebills_reach_the_queue(self, engine, null_queue):
        await _owe(engine, "c-1", datetime.now(UTC) - timedelta(minutes=1))

        await recover_pending_rebills(SimpleNamespace(recovery=RebillRecovery(engine, null_queue)))

        assert [job.contract_id for job in null_queue.jobs_of(RebillJob)] == ["c-1"]
