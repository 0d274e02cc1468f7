"""Tests for DunningEngine against a real SQLite state store.

Covers:
- escalation through the tiers with delayed RebillJob follow-ups
- persistent failures closing the record (and its open siblings)
- exhaustion and the requested upstream action
- duplicate, stale, completed and superseded reports, including a success
  or a termination that is reported before an older failure
- success resolution scope
- compare-and-set retry on concurrent updates
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from conftest import BASE_TIME, make_report

from billing_engine.config import OnFailureAction
from billing_engine.dunning.engine import DunningEngine, DunningPolicy
from billing_engine.errors import StaleDunningRecordError
from billing_engine.events import EventType
from billing_engine.jobs.messages import RebillJob
from billing_engine.models.charge import ChargeOutcome
from billing_engine.models.dunning import RESOLVED_CYCLE_REASON, CompletionReason, DunningState, DunningTier
from billing_engine.state.database import get_session
from billing_engine.state.repository import DunningRepository

TENANT = "shop-1.example.com"
CONTRACT = "gid://contract/1"
CYCLE = 3

POLICY = DunningPolicy(
    retry_limit=2,
    retry_interval=timedelta(hours=24),
    penultimate_interval=timedelta(hours=48),
    final_interval=timedelta(hours=72),
)


@pytest.fixture
def dunning(engine, null_queue, event_bus) -> DunningEngine:
    return DunningEngine(engine, null_queue, policy=POLICY, event_bus=event_bus)


async def _load(engine, failure_reason: str, cycle: int = CYCLE) -> DunningState | None:
    async with get_session(engine) as session:
        record = await DunningRepository(session, TENANT).get(CONTRACT, cycle, failure_reason)
        return DunningState.model_validate(record) if record is not None else None


def _failure(n: int, reason: str = "INSUFFICIENT_FUNDS", **kwargs):
    """The n-th failure report, one day after the previous one."""
    return make_report(
        failure_reason=reason,
        billing_attempt_id=f"attempt-{n}",
        occurred_at=BASE_TIME + timedelta(days=n - 1),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


class TestEscalation:
    @pytest.mark.asyncio
    async def test_first_failure_opens_record_at_retry(self, dunning, engine, null_queue, event_bus):
        result = await dunning.handle_report(_failure(1))

        assert result.applied
        state = await _load(engine, "INSUFFICIENT_FUNDS")
        assert state is not None
        assert state.tier is DunningTier.RETRY
        assert state.attempt_count == 1
        assert state.next_attempt_at == BASE_TIME + timedelta(hours=24)
        assert state.last_billing_attempt_id == "attempt-1"
        assert state.origin_time == BASE_TIME
        assert state.is_open

        [(job, run_at)] = null_queue.enqueued
        assert isinstance(job, RebillJob)
        assert job.attempt_count == 1
        assert job.failure_reason == "INSUFFICIENT_FUNDS"
        assert run_at == BASE_TIME + timedelta(hours=24)

        [signal] = event_bus.of_type(EventType.DUNNING_RETRY_SCHEDULED)
        assert signal.tenant_id == TENANT
        assert signal.data["tier"] == "RETRY"

    @pytest.mark.asyncio
    async def test_passing_retry_limit_escalates_to_penultimate(self, dunning, engine, null_queue, event_bus):
        for n in (1, 2, 3):
            await dunning.handle_report(_failure(n))

        state = await _load(engine, "INSUFFICIENT_FUNDS")
        assert state.tier is DunningTier.PENULTIMATE
        assert state.attempt_count == 3
        assert state.next_attempt_at == BASE_TIME + timedelta(days=2, hours=48)

        jobs = null_queue.jobs_of(RebillJob)
        assert [j.attempt_count for j in jobs] == [1, 2, 3]
        assert len(event_bus.of_type(EventType.DUNNING_RETRY_SCHEDULED)) == 2
        assert len(event_bus.of_type(EventType.DUNNING_PENULTIMATE_ATTEMPT)) == 1

    @pytest.mark.asyncio
    async def test_origin_time_from_report_anchors_rebills(self, dunning, null_queue):
        origin = BASE_TIME - timedelta(days=1)
        await dunning.handle_report(_failure(1, origin_time=origin))
        [job] = null_queue.jobs_of(RebillJob)
        assert job.origin_time == origin

    @pytest.mark.asyncio
    async def test_exhaustion_completes_and_requests_action(self, engine, null_queue, event_bus):
        policy = DunningPolicy(retry_limit=0, on_failure=OnFailureAction.CANCEL)
        dunning = DunningEngine(engine, null_queue, policy=policy, event_bus=event_bus)

        for n in (1, 2, 3):
            await dunning.handle_report(_failure(n))

        state = await _load(engine, "INSUFFICIENT_FUNDS")
        assert not state.is_open
        assert state.tier is DunningTier.FINAL
        assert state.completed_reason == CompletionReason.EXHAUSTED.value
        assert state.completed_at == BASE_TIME + timedelta(days=2)
        assert state.next_attempt_at is None

        assert len(null_queue.jobs_of(RebillJob)) == 2
        [signal] = event_bus.of_type(EventType.DUNNING_EXHAUSTED)
        assert signal.data["requested_action"] == "cancel"


# ---------------------------------------------------------------------------
# Persistent failures
# ---------------------------------------------------------------------------


class TestPersistentFailure:
    @pytest.mark.asyncio
    async def test_persistent_failure_completes_without_rebill(self, dunning, engine, null_queue, event_bus):
        result = await dunning.handle_report(_failure(1, reason="CONTRACT_TERMINATED"))

        assert result.applied
        assert result.transition.is_terminal
        state = await _load(engine, "CONTRACT_TERMINATED")
        assert not state.is_open
        assert state.completed_reason == "CONTRACT_TERMINATED"
        assert state.completed_at == BASE_TIME
        assert null_queue.jobs_of(RebillJob) == []
        assert len(event_bus.of_type(EventType.DUNNING_TERMINATED)) == 1

    @pytest.mark.asyncio
    async def test_persistent_failure_closes_open_siblings(self, dunning, engine, event_bus):
        await dunning.handle_report(_failure(1))
        result = await dunning.handle_report(_failure(2, reason="CONTRACT_PAUSED"))

        assert [s.failure_reason for s in result.closed] == ["INSUFFICIENT_FUNDS"]
        sibling = await _load(engine, "INSUFFICIENT_FUNDS")
        assert not sibling.is_open
        assert sibling.completed_reason == "CONTRACT_PAUSED"
        assert sibling.next_attempt_at is None

        [signal] = event_bus.of_type(EventType.DUNNING_TERMINATED)
        assert signal.data["closed_siblings"] == ["INSUFFICIENT_FUNDS"]

    @pytest.mark.asyncio
    async def test_other_cycles_are_untouched(self, dunning, engine):
        await dunning.handle_report(_failure(1, billing_cycle_index=CYCLE + 1))
        await dunning.handle_report(_failure(2, reason="CONTRACT_TERMINATED"))

        other = await _load(engine, "INSUFFICIENT_FUNDS", cycle=CYCLE + 1)
        assert other.is_open

    @pytest.mark.asyncio
    async def test_failure_on_completed_record_is_ignored(self, dunning, engine, null_queue):
        await dunning.handle_report(_failure(1, reason="CONTRACT_TERMINATED"))
        result = await dunning.handle_report(_failure(2, reason="CONTRACT_TERMINATED"))

        assert not result.applied
        assert result.skipped == "completed"
        state = await _load(engine, "CONTRACT_TERMINATED")
        assert state.attempt_count == 1
        assert state.last_billing_attempt_id == "attempt-1"


# ---------------------------------------------------------------------------
# Idempotency and ordering
# ---------------------------------------------------------------------------


class TestRedeliveryAndOrdering:
    @pytest.mark.asyncio
    async def test_redelivered_report_is_a_no_op(self, dunning, engine, null_queue, event_bus):
        report = _failure(1)
        await dunning.handle_report(report)
        again = await dunning.handle_report(report)

        assert not again.applied
        assert again.skipped == "duplicate"
        state = await _load(engine, "INSUFFICIENT_FUNDS")
        assert state.attempt_count == 1
        assert len(null_queue.jobs_of(RebillJob)) == 1
        assert len(event_bus.of_type(EventType.DUNNING_RETRY_SCHEDULED)) == 1

    @pytest.mark.asyncio
    async def test_older_report_arriving_late_is_ignored(self, dunning, engine):
        await dunning.handle_report(_failure(2))
        late = await dunning.handle_report(_failure(1))

        assert late.skipped == "stale"
        state = await _load(engine, "INSUFFICIENT_FUNDS")
        assert state.attempt_count == 1
        assert state.last_billing_attempt_id == "attempt-2"

    @pytest.mark.asyncio
    async def test_failure_older_than_resolution_is_superseded(self, dunning, engine):
        await dunning.handle_report(_failure(1))
        await dunning.handle_report(
            make_report(ChargeOutcome.SUCCESS, billing_attempt_id="attempt-ok", occurred_at=BASE_TIME + timedelta(hours=6))
        )
        late = await dunning.handle_report(
            make_report(
                failure_reason="PAYMENT_METHOD_DECLINED",
                billing_attempt_id="attempt-late",
                occurred_at=BASE_TIME + timedelta(hours=3),
            )
        )

        assert late.skipped == "superseded"
        assert await _load(engine, "PAYMENT_METHOD_DECLINED") is None

    @pytest.mark.asyncio
    async def test_success_reported_before_an_older_failure_wins(self, dunning, engine, null_queue, event_bus):
        paid = await dunning.handle_report(
            make_report(ChargeOutcome.SUCCESS, billing_attempt_id="attempt-ok", occurred_at=BASE_TIME + timedelta(hours=1))
        )
        late = await dunning.handle_report(_failure(1))

        assert paid.skipped == "no_open_records"
        assert late.skipped == "superseded"
        assert await _load(engine, "INSUFFICIENT_FUNDS") is None
        assert null_queue.jobs_of(RebillJob) == []
        assert event_bus.events == []

    @pytest.mark.asyncio
    async def test_failure_after_an_early_success_still_opens(self, dunning, engine, null_queue):
        await dunning.handle_report(make_report(ChargeOutcome.SUCCESS, billing_attempt_id="attempt-ok"))
        result = await dunning.handle_report(_failure(2))

        assert result.applied
        assert (await _load(engine, "INSUFFICIENT_FUNDS")).is_open
        assert len(null_queue.jobs_of(RebillJob)) == 1

    @pytest.mark.asyncio
    async def test_resolution_marker_only_moves_forward(self, dunning, engine):
        for hours in (1, 6, 3):
            await dunning.handle_report(
                make_report(
                    ChargeOutcome.SUCCESS,
                    billing_attempt_id=f"attempt-ok-{hours}",
                    occurred_at=BASE_TIME + timedelta(hours=hours),
                )
            )

        marker = await _load(engine, RESOLVED_CYCLE_REASON)
        assert marker.completed_at == BASE_TIME + timedelta(hours=6)
        assert marker.last_billing_attempt_id == "attempt-ok-6"
        assert marker.attempt_count == 0

        late = await dunning.handle_report(
            make_report(billing_attempt_id="attempt-late", occurred_at=BASE_TIME + timedelta(hours=4))
        )
        assert late.skipped == "superseded"

    @pytest.mark.asyncio
    async def test_reason_scoped_success_before_failure_wins(self, dunning, engine, null_queue):
        await dunning.handle_report(
            make_report(
                ChargeOutcome.SUCCESS,
                billing_attempt_id="attempt-ok",
                occurred_at=BASE_TIME + timedelta(hours=1),
                success_reason="INSUFFICIENT_FUNDS",
            )
        )
        late = await dunning.handle_report(_failure(1))

        assert not late.applied
        state = await _load(engine, "INSUFFICIENT_FUNDS")
        assert state.completed_reason == CompletionReason.RESOLVED.value
        assert state.attempt_count == 0
        assert null_queue.jobs_of(RebillJob) == []

    @pytest.mark.asyncio
    async def test_failure_older_than_termination_is_superseded(self, dunning, engine, null_queue):
        await dunning.handle_report(
            make_report(
                failure_reason="CONTRACT_TERMINATED",
                billing_attempt_id="attempt-terminated",
                occurred_at=BASE_TIME + timedelta(hours=1),
            )
        )
        late = await dunning.handle_report(_failure(1))

        assert late.skipped == "superseded"
        assert await _load(engine, "INSUFFICIENT_FUNDS") is None
        assert null_queue.jobs_of(RebillJob) == []

    @pytest.mark.asyncio
    async def test_failure_older_than_exhaustion_is_superseded(self, engine, null_queue, event_bus):
        dunning = DunningEngine(engine, null_queue, policy=DunningPolicy(retry_limit=0), event_bus=event_bus)
        for n in (1, 2, 3):
            await dunning.handle_report(_failure(n))
        assert (await _load(engine, "INSUFFICIENT_FUNDS")).completed_reason == CompletionReason.EXHAUSTED.value

        late = await dunning.handle_report(
            make_report(
                failure_reason="PAYMENT_METHOD_DECLINED",
                billing_attempt_id="attempt-late",
                occurred_at=BASE_TIME + timedelta(days=1),
            )
        )

        assert late.skipped == "superseded"
        assert await _load(engine, "PAYMENT_METHOD_DECLINED") is None
        assert len(null_queue.jobs_of(RebillJob)) == 2

    @pytest.mark.asyncio
    async def test_rejected_rebill_does_not_close_the_cycle(self, dunning, engine):
        await dunning.handle_report(_failure(2))
        record = await _load(engine, "INSUFFICIENT_FUNDS")
        async with get_session(engine) as session:
            await DunningRepository(session, TENANT).compare_and_set(
                record.id,
                record.version,
                completed_at=BASE_TIME + timedelta(days=2),
                completed_reason=CompletionReason.REJECTED.value,
                next_attempt_at=None,
            )

        other = await dunning.handle_report(_failure(1, reason="PAYMENT_METHOD_DECLINED"))

        assert other.applied
        assert (await _load(engine, "PAYMENT_METHOD_DECLINED")).is_open


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


class TestSuccess:
    @pytest.mark.asyncio
    async def test_success_resolves_every_open_record_on_the_cycle(self, dunning, engine, event_bus):
        await dunning.handle_report(_failure(1))
        await dunning.handle_report(_failure(2, reason="PAYMENT_METHOD_DECLINED"))

        success_at = BASE_TIME + timedelta(days=3)
        result = await dunning.handle_report(
            make_report(ChargeOutcome.SUCCESS, billing_attempt_id="attempt-ok", occurred_at=success_at)
        )

        assert result.applied
        assert sorted(s.failure_reason for s in result.closed) == ["INSUFFICIENT_FUNDS", "PAYMENT_METHOD_DECLINED"]
        for reason in ("INSUFFICIENT_FUNDS", "PAYMENT_METHOD_DECLINED"):
            state = await _load(engine, reason)
            assert state.completed_reason == CompletionReason.RESOLVED.value
            assert state.completed_at == success_at
            assert state.last_billing_attempt_id == "attempt-ok"
        assert len(event_bus.of_type(EventType.DUNNING_RESOLVED)) == 2

    @pytest.mark.asyncio
    async def test_success_naming_a_reason_resolves_only_that_record(self, dunning, engine):
        await dunning.handle_report(_failure(1))
        await dunning.handle_report(_failure(2, reason="PAYMENT_METHOD_DECLINED"))

        result = await dunning.handle_report(
            make_report(
                ChargeOutcome.SUCCESS,
                billing_attempt_id="attempt-ok",
                occurred_at=BASE_TIME + timedelta(days=3),
                success_reason="INSUFFICIENT_FUNDS",
            )
        )

        assert [s.failure_reason for s in result.closed] == ["INSUFFICIENT_FUNDS"]
        assert not (await _load(engine, "INSUFFICIENT_FUNDS")).is_open
        assert (await _load(engine, "PAYMENT_METHOD_DECLINED")).is_open

    @pytest.mark.asyncio
    async def test_success_without_records_is_remembered_silently(self, dunning, engine, event_bus):
        result = await dunning.handle_report(make_report(ChargeOutcome.SUCCESS, billing_attempt_id="attempt-ok"))

        assert not result.applied
        assert result.skipped == "no_open_records"
        assert event_bus.events == []
        marker = await _load(engine, RESOLVED_CYCLE_REASON)
        assert marker.completed_reason == CompletionReason.RESOLVED.value
        assert marker.completed_at == BASE_TIME
        assert not marker.is_open

    @pytest.mark.asyncio
    async def test_resolved_record_stays_resolved(self, dunning, engine):
        await dunning.handle_report(_failure(1))
        await dunning.handle_report(
            make_report(ChargeOutcome.SUCCESS, billing_attempt_id="attempt-ok", occurred_at=BASE_TIME + timedelta(hours=1))
        )
        again = await dunning.handle_report(
            make_report(ChargeOutcome.SUCCESS, billing_attempt_id="attempt-ok", occurred_at=BASE_TIME + timedelta(hours=1))
        )

        assert again.skipped == "no_open_records"
        state = await _load(engine, "INSUFFICIENT_FUNDS")
        assert state.completed_at == BASE_TIME + timedelta(hours=1)


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestCompareAndSetRetry:
    @pytest.mark.asyncio
    async def test_lost_race_is_re_read_and_applied_once(self, dunning, engine, null_queue):
        original = DunningRepository.compare_and_set
        calls = {"n": 0}

        async def flaky(self, record_id, expected_version, **values):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleDunningRecordError(record_id, expected_version)
            return await original(self, record_id, expected_version, **values)

        with patch.object(DunningRepository, "compare_and_set", flaky):
            result = await dunning.handle_report(_failure(1))

        assert result.applied
        assert calls["n"] == 2
        state = await _load(engine, "INSUFFICIENT_FUNDS")
        assert state.attempt_count == 1
        assert state.version == 1
        assert len(null_queue.jobs_of(RebillJob)) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, engine, null_queue, event_bus):
        dunning = DunningEngine(engine, null_queue, policy=POLICY, event_bus=event_bus, max_cas_attempts=2)

        async def always_stale(self, record_id, expected_version, **values):
            raise StaleDunningRecordError(record_id, expected_version)

        with patch.object(DunningRepository, "compare_and_set", always_stale):
            with pytest.raises(StaleDunningRecordError):
                await dunning.handle_report(_failure(1))

        assert null_queue.enqueued == []
        assert event_bus.events == []
