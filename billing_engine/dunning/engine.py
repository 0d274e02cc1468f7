"""Dunning state machine: what happens after a charge fails or succeeds.

The transition table lives in :func:`plan_failure`, a pure function of the
record's current tier and attempt count.  :class:`DunningEngine` wraps it
with the persistence rules:

* one record per (tenant, contract, cycle, failure reason);
* completed records are immutable;
* re-delivered and out-of-order reports are detected and ignored;
* a failure generated before the cycle was paid, terminated or exhausted
  never reopens it, even when its report arrives afterwards;
* every write is a compare-and-set on ``version`` and the whole
  read-decide-write is repeated when another writer wins the race.

Follow-up work (the delayed rebill and the outward signal) is issued only
after the transition has committed.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from billing_engine.config import BillingSettings, OnFailureAction
from billing_engine.dunning.classification import CLASSIFICATION, FailureClass, classify, parse_failure_reason
from billing_engine.errors import StaleDunningRecordError
from billing_engine.events import EventBus, EventType, get_event_bus
from billing_engine.jobs.messages import RebillJob
from billing_engine.jobs.queue import JobQueue
from billing_engine.models.charge import ChargeOutcome, ChargeOutcomeReport
from billing_engine.models.dunning import RESOLVED_CYCLE_REASON, CompletionReason, DunningState, DunningTier
from billing_engine.state.database import get_session
from billing_engine.state.repository import DunningRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_CAS_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Policy and transition table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DunningPolicy:
    """Retry thresholds and cadence.

    ``retry_limit`` is the number of attempts allowed at the ``RETRY`` tier;
    the failure that pushes ``attempt_count`` past it escalates to
    ``PENULTIMATE``.
    """

    retry_limit: int = 3
    retry_interval: timedelta = timedelta(hours=48)
    penultimate_interval: timedelta = timedelta(hours=72)
    final_interval: timedelta = timedelta(hours=72)
    on_failure: OnFailureAction = OnFailureAction.PAUSE

    @classmethod
    def from_settings(cls, settings: BillingSettings) -> DunningPolicy:
        return cls(
            retry_limit=settings.dunning_retry_limit,
            retry_interval=timedelta(hours=settings.dunning_retry_interval_hours),
            penultimate_interval=timedelta(hours=settings.dunning_penultimate_interval_hours),
            final_interval=timedelta(hours=settings.dunning_final_interval_hours),
            on_failure=settings.dunning_on_failure,
        )

    def interval_for(self, tier: DunningTier) -> timedelta:
        if tier is DunningTier.RETRY:
            return self.retry_interval
        if tier is DunningTier.PENULTIMATE:
            return self.penultimate_interval
        return self.final_interval


@dataclass(frozen=True)
class Transition:
    """Outcome of applying one failure to a record.

    An open transition has ``completed_reason=None`` and a ``rebill_after``
    delay; a terminal one has ``completed_reason`` set and no rebill.
    """

    tier: DunningTier
    attempt_count: int
    signal: EventType
    completed_reason: str | None = None
    rebill_after: timedelta | None = None

    @property
    def is_terminal(self) -> bool:
        return self.completed_reason is not None


def plan_failure(
    tier: DunningTier,
    attempt_count: int,
    failure_reason: str,
    policy: DunningPolicy,
) -> Transition:
    """Return the transition for one more failure of *failure_reason*.

    Never skips a tier: RETRY stays at RETRY until the limit is passed,
    then PENULTIMATE, FINAL and finally exhaustion, one step per failure.
    """
    n = attempt_count + 1

    if classify(failure_reason) is FailureClass.PERSISTENT:
        return Transition(
            tier=tier,
            attempt_count=n,
            signal=EventType.DUNNING_TERMINATED,
            completed_reason=failure_reason,
        )

    if tier is DunningTier.RETRY:
        if n <= policy.retry_limit:
            return Transition(
                tier=DunningTier.RETRY,
                attempt_count=n,
                signal=EventType.DUNNING_RETRY_SCHEDULED,
                rebill_after=policy.interval_for(DunningTier.RETRY),
            )
        return Transition(
            tier=DunningTier.PENULTIMATE,
            attempt_count=n,
            signal=EventType.DUNNING_PENULTIMATE_ATTEMPT,
            rebill_after=policy.interval_for(DunningTier.PENULTIMATE),
        )

    if tier is DunningTier.PENULTIMATE:
        return Transition(
            tier=DunningTier.FINAL,
            attempt_count=n,
            signal=EventType.DUNNING_FINAL_ATTEMPT,
            rebill_after=policy.interval_for(DunningTier.FINAL),
        )

    return Transition(
        tier=DunningTier.FINAL,
        attempt_count=n,
        signal=EventType.DUNNING_EXHAUSTED,
        completed_reason=CompletionReason.EXHAUSTED.value,
    )


def ends_cycle(completed_reason: str | None) -> bool:
    """Whether a completion closes the whole billing cycle.

    Resolution, exhaustion and persistent failures do; a rejected rebill
    closes only its own record.
    """
    if completed_reason in (CompletionReason.RESOLVED.value, CompletionReason.EXHAUSTED.value):
        return True
    if completed_reason is None or completed_reason == CompletionReason.REJECTED.value:
        return False
    reason = parse_failure_reason(completed_reason)
    return reason is not None and CLASSIFICATION[reason] is FailureClass.PERSISTENT


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class DunningResult:
    """What a report did to dunning state.

    ``skipped`` names why nothing changed (``"completed"``, ``"duplicate"``,
    ``"stale"``, ``"superseded"`` or ``"no_open_records"``).
    """

    applied: bool
    state: DunningState | None = None
    transition: Transition | None = None
    skipped: str | None = None
    closed: list[DunningState] = field(default_factory=list)


class DunningEngine:
    """Applies charge outcome reports to dunning records.

    Parameters
    ----------
    engine:
        Async engine for the state store.  Each decision runs in its own
        committed session.
    queue:
        Where delayed :class:`RebillJob` messages are enqueued.
    policy:
        Retry thresholds; defaults to :class:`DunningPolicy` defaults.
    event_bus:
        Destination for dunning signals; the module-level bus by default.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        queue: JobQueue,
        *,
        policy: DunningPolicy | None = None,
        event_bus: EventBus | None = None,
        max_cas_attempts: int = _MAX_CAS_ATTEMPTS,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._policy = policy or DunningPolicy()
        self._bus = event_bus or get_event_bus()
        self._max_cas_attempts = max_cas_attempts

    @property
    def policy(self) -> DunningPolicy:
        return self._policy

    async def handle_report(self, report: ChargeOutcomeReport) -> DunningResult:
        if report.outcome is ChargeOutcome.SUCCESS:
            return await self.record_success(report)
        return await self.record_failure(report)

    # -- failure -----------------------------------------------------------

    async def record_failure(self, report: ChargeOutcomeReport) -> DunningResult:
        """Apply a failure report and schedule its follow-up."""
        result = await self._with_cas_retry(
            lambda session: self._apply_failure(session, report),
            label=f"failure {report.billing_attempt_id}",
        )
        if result.applied:
            await self._follow_up_failure(report, result)
        else:
            logger.info(
                "Ignored %s failure report %s for tenant=%s contract=%s cycle=%d",
                result.skipped,
                report.billing_attempt_id,
                report.tenant_id,
                report.contract_id,
                report.billing_cycle_index,
            )
        return result

    async def _apply_failure(self, session: AsyncSession, report: ChargeOutcomeReport) -> DunningResult:
        assert report.failure_reason is not None  # noqa: S101
        repo = DunningRepository(session, report.tenant_id)

        cycle_records = await repo.list_for_cycle(report.contract_id, report.billing_cycle_index)
        closed_at = [
            r.completed_at for r in cycle_records if r.completed_at is not None and ends_cycle(r.completed_reason)
        ]
        if closed_at and report.occurred_at <= max(closed_at):
            return DunningResult(applied=False, skipped="superseded")

        record = await repo.get_or_create(
            report.contract_id,
            report.billing_cycle_index,
            report.failure_reason,
            origin_time=report.origin_time or report.occurred_at,
        )
        state = DunningState.model_validate(record)

        if not state.is_open:
            return DunningResult(applied=False, state=state, skipped="completed")
        if state.last_billing_attempt_id == report.billing_attempt_id:
            return DunningResult(applied=False, state=state, skipped="duplicate")
        if state.last_failure_at is not None and report.occurred_at < state.last_failure_at:
            return DunningResult(applied=False, state=state, skipped="stale")

        transition = plan_failure(state.tier, state.attempt_count, state.failure_reason, self._policy)
        values: dict[str, Any] = {
            "tier": transition.tier.value,
            "attempt_count": transition.attempt_count,
            "last_billing_attempt_id": report.billing_attempt_id,
            "last_failure_at": report.occurred_at,
            "origin_time": state.origin_time or report.origin_time or report.occurred_at,
        }
        if transition.is_terminal:
            values.update(
                completed_at=report.occurred_at,
                completed_reason=transition.completed_reason,
                next_attempt_at=None,
            )
        else:
            assert transition.rebill_after is not None  # noqa: S101
            values["next_attempt_at"] = report.occurred_at + transition.rebill_after

        await repo.compare_and_set(state.id, state.version, **values)
        updated = state.model_copy(update={**values, "tier": transition.tier, "version": state.version + 1})

        closed: list[DunningState] = []
        if transition.is_terminal:
            closed = await self._close_siblings(
                repo,
                cycle_records,
                exclude_id=state.id,
                completed_at=report.occurred_at,
                completed_reason=transition.completed_reason,  # type: ignore[arg-type]
            )

        return DunningResult(applied=True, state=updated, transition=transition, closed=closed)

    async def _follow_up_failure(self, report: ChargeOutcomeReport, result: DunningResult) -> None:
        state, transition = result.state, result.transition
        assert state is not None and transition is not None  # noqa: S101

        data: dict[str, Any] = {
            "contract_id": state.contract_id,
            "billing_cycle_index": state.billing_cycle_index,
            "failure_reason": state.failure_reason,
            "tier": transition.tier.value,
            "attempt_count": transition.attempt_count,
            "billing_attempt_id": report.billing_attempt_id,
        }

        if transition.is_terminal:
            data["completed_reason"] = transition.completed_reason
            data["closed_siblings"] = [s.failure_reason for s in result.closed]
            if transition.signal is EventType.DUNNING_EXHAUSTED:
                data["requested_action"] = self._policy.on_failure.value
                logger.warning(
                    "Dunning exhausted for tenant=%s contract=%s cycle=%d; requesting %s upstream",
                    state.tenant_id,
                    state.contract_id,
                    state.billing_cycle_index,
                    self._policy.on_failure.value,
                )
            else:
                logger.info(
                    "Dunning closed for tenant=%s contract=%s cycle=%d: persistent failure %s",
                    state.tenant_id,
                    state.contract_id,
                    state.billing_cycle_index,
                    transition.completed_reason,
                )
        else:
            assert state.next_attempt_at is not None and state.origin_time is not None  # noqa: S101
            job = RebillJob(
                tenant_id=state.tenant_id,
                contract_id=state.contract_id,
                billing_cycle_index=state.billing_cycle_index,
                failure_reason=state.failure_reason,
                attempt_count=transition.attempt_count,
                origin_time=state.origin_time,
            )
            accepted = await self._queue.enqueue(job, run_at=state.next_attempt_at)
            data["next_attempt_at"] = state.next_attempt_at.isoformat()
            logger.info(
                "Dunning %s attempt %d for tenant=%s contract=%s cycle=%d reason=%s; rebill at %s (accepted=%s)",
                transition.tier.value,
                transition.attempt_count,
                state.tenant_id,
                state.contract_id,
                state.billing_cycle_index,
                state.failure_reason,
                state.next_attempt_at.isoformat(),
                accepted,
            )

        await self._bus.emit(transition.signal, tenant_id=state.tenant_id, data=data)

    # -- success -----------------------------------------------------------

    async def record_success(self, report: ChargeOutcomeReport) -> DunningResult:
        """Resolve the open records a successful charge settles.

        Without a ``failure_reason`` every open record of the cycle is
        resolved.  With one, only that reason's record is.  When nothing is
        open yet the resolution is still stored, so a failure generated
        earlier but reported later is recognised as superseded.
        """
        result = await self._with_cas_retry(
            lambda session: self._apply_success(session, report),
            label=f"success {report.billing_attempt_id}",
        )
        for state in result.closed:
            await self._bus.emit(
                EventType.DUNNING_RESOLVED,
                tenant_id=state.tenant_id,
                data={
                    "contract_id": state.contract_id,
                    "billing_cycle_index": state.billing_cycle_index,
                    "failure_reason": state.failure_reason,
                    "attempt_count": state.attempt_count,
                    "billing_attempt_id": report.billing_attempt_id,
                },
            )
        if result.closed:
            logger.info(
                "Resolved %d dunning record(s) for tenant=%s contract=%s cycle=%d",
                len(result.closed),
                report.tenant_id,
                report.contract_id,
                report.billing_cycle_index,
            )
        return result

    async def _apply_success(self, session: AsyncSession, report: ChargeOutcomeReport) -> DunningResult:
        repo = DunningRepository(session, report.tenant_id)
        records = await repo.list_for_cycle(report.contract_id, report.billing_cycle_index)
        if report.failure_reason is not None:
            records = [r for r in records if r.failure_reason == report.failure_reason]

        closed = await self._close_siblings(
            repo,
            records,
            exclude_id=None,
            completed_at=report.occurred_at,
            completed_reason=CompletionReason.RESOLVED.value,
            billing_attempt_id=report.billing_attempt_id,
        )
        if not closed:
            await self._store_resolution(repo, report)
            return DunningResult(applied=False, skipped="no_open_records")
        return DunningResult(applied=True, closed=closed)

    @staticmethod
    async def _store_resolution(repo: DunningRepository, report: ChargeOutcomeReport) -> None:
        """Remember that the cycle was paid so a failure reported late cannot reopen it.

        The marker is keyed on the report's failure reason, or on
        :data:`RESOLVED_CYCLE_REASON` for the whole cycle, and only ever moves
        forward in time.
        """
        reason = report.failure_reason or RESOLVED_CYCLE_REASON
        if await repo.record_resolution(
            report.contract_id,
            report.billing_cycle_index,
            reason,
            resolved_at=report.occurred_at,
            billing_attempt_id=report.billing_attempt_id,
        ):
            logger.info(
                "Recorded resolution of tenant=%s contract=%s cycle=%d reason=%s before any failure",
                report.tenant_id,
                report.contract_id,
                report.billing_cycle_index,
                reason,
            )
            return

        existing = await repo.get(report.contract_id, report.billing_cycle_index, reason)
        if existing is None:
            return
        marker = DunningState.model_validate(existing)
        if (
            marker.attempt_count == 0
            and marker.completed_reason == CompletionReason.RESOLVED.value
            and marker.completed_at is not None
            and marker.completed_at < report.occurred_at
        ):
            await repo.compare_and_set(
                marker.id,
                marker.version,
                completed_at=report.occurred_at,
                last_billing_attempt_id=report.billing_attempt_id,
            )

    # -- helpers -----------------------------------------------------------

    @staticmethod
    async def _close_siblings(
        repo: DunningRepository,
        records: list[Any],
        *,
        exclude_id: int | None,
        completed_at: datetime,
        completed_reason: str,
        billing_attempt_id: str | None = None,
    ) -> list[DunningState]:
        closed: list[DunningState] = []
        for record in records:
            state = DunningState.model_validate(record)
            if state.id == exclude_id or not state.is_open:
                continue
            values: dict[str, Any] = {
                "completed_at": completed_at,
                "completed_reason": completed_reason,
                "next_attempt_at": None,
            }
            if billing_attempt_id is not None:
                values["last_billing_attempt_id"] = billing_attempt_id
            await repo.compare_and_set(state.id, state.version, **values)
            closed.append(state.model_copy(update={**values, "version": state.version + 1}))
        return closed

    async def _with_cas_retry(
        self,
        decide: Callable[[AsyncSession], Awaitable[T]],
        *,
        label: str,
    ) -> T:
        """Run *decide* in a fresh session, repeating it when a compare-and-set loses."""
        last_exc: StaleDunningRecordError | None = None
        for attempt in range(1, self._max_cas_attempts + 1):
            try:
                async with get_session(self._engine) as session:
                    return await decide(session)
            except StaleDunningRecordError as exc:
                last_exc = exc
                logger.info("Conflict applying %s (attempt %d/%d): %s", label, attempt, self._max_cas_attempts, exc)
        assert last_exc is not None  # noqa: S101
        raise last_exc
