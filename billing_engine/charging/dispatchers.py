"""Outbound charge dispatch: one bulk charge per due tenant, targeted rebills per dunning record.

INVARIANT: at most one bulk-charge request per (tenant, tick).  The claim
row in ``bulk_charge_dispatches`` is inserted in the same transaction that
wraps the upstream call, so a redelivered job finds the claim and stops,
while a transport failure rolls the claim back for the substrate's retry.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from billing_engine.charging.client import UpstreamBillingClient
from billing_engine.errors import StaleDunningRecordError, UpstreamRejectedError
from billing_engine.events import EventBus, EventType, get_event_bus
from billing_engine.jobs.messages import BulkChargeJob, RebillJob
from billing_engine.models.charge import BulkChargeRequest, IndividualChargeRequest
from billing_engine.models.dunning import CompletionReason
from billing_engine.state.database import get_session
from billing_engine.state.repository import BulkChargeDispatchRepository, DunningRepository

logger = logging.getLogger(__name__)


class DispatchResult(str, Enum):
    SENT = "sent"
    DUPLICATE = "duplicate"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


def bulk_idempotency_key(job: BulkChargeJob) -> str:
    return f"bulk:{job.tenant_id}:{job.tick.isoformat()}"


def rebill_idempotency_key(job: RebillJob) -> str:
    return f"{job.tenant_id}:{job.contract_id}:{job.billing_cycle_index}:{job.failure_reason}:{job.attempt_count}"


class BulkChargeDispatcher:
    """Sends the hourly bulk charge for one tenant."""

    def __init__(
        self,
        engine: AsyncEngine,
        client: UpstreamBillingClient,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._engine = engine
        self._client = client
        self._bus = event_bus or get_event_bus()

    async def dispatch(self, job: BulkChargeJob) -> DispatchResult:
        """Claim the tick and send the bulk charge request.

        Raises
        ------
        UpstreamTransportError
            When the request could not be delivered.  The claim is rolled
            back so the substrate's retry can send it again.
        """
        request = BulkChargeRequest(
            start_date=job.window.start,
            end_date=job.window.end,
            filters=job.filters,
            idempotency_key=bulk_idempotency_key(job),
        )

        rejection: UpstreamRejectedError | None = None
        upstream_job_id: str | None = None

        async with get_session(self._engine) as session:
            repo = BulkChargeDispatchRepository(session, job.tenant_id)
            if not await repo.claim(job.tick, job.window):
                logger.info(
                    "Bulk charge for tenant=%s tick=%s already dispatched; skipping",
                    job.tenant_id,
                    job.tick.isoformat(),
                )
                return DispatchResult.DUPLICATE

            try:
                upstream_job_id = await self._client.bulk_charge(job.tenant_id, request)
            except UpstreamRejectedError as exc:
                rejection = exc
                await repo.mark_rejected(job.tick, str(exc))
            else:
                await repo.mark_accepted(job.tick, upstream_job_id)

        data = {
            "tick": job.tick.isoformat(),
            "window_start": job.window.start.isoformat(),
            "window_end": job.window.end.isoformat(),
        }

        if rejection is not None:
            logger.error(
                "Configuration defect: bulk charge rejected for tenant=%s tick=%s: %s",
                job.tenant_id,
                job.tick.isoformat(),
                rejection,
                extra={"tenant_id": job.tenant_id, "job_id": job.job_id},
            )
            await self._bus.emit(
                EventType.BULK_CHARGE_REJECTED,
                tenant_id=job.tenant_id,
                data={**data, "error": str(rejection), "user_errors": rejection.user_errors},
            )
            return DispatchResult.REJECTED

        logger.info(
            "Bulk charge sent for tenant=%s window=[%s, %s] upstream_job=%s",
            job.tenant_id,
            job.window.start.isoformat(),
            job.window.end.isoformat(),
            upstream_job_id,
            extra={"tenant_id": job.tenant_id, "job_id": job.job_id},
        )
        await self._bus.emit(
            EventType.BULK_CHARGE_REQUESTED,
            tenant_id=job.tenant_id,
            data={**data, "upstream_job_id": upstream_job_id},
        )
        return DispatchResult.SENT


class RebillDispatcher:
    """Sends the targeted retry a dunning record scheduled.

    The record is re-read at call time: a completed record, one whose
    ``attempt_count`` moved on since the job was scheduled, or one whose
    rebill for this attempt already went out cancels the job.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        client: UpstreamBillingClient,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._engine = engine
        self._client = client
        self._bus = event_bus or get_event_bus()

    async def dispatch(self, job: RebillJob) -> DispatchResult:
        """Send the rebill if its record still owes it.

        After a successful send ``next_attempt_at`` is cleared, so the record
        no longer counts as owing a rebill until its next failure.  A
        rejection closes the record as ``REJECTED`` and is signalled for
        operator attention.

        Raises
        ------
        UpstreamTransportError
            When the request could not be delivered; the record is left as
            it was for the substrate's retry.
        """
        async with get_session(self._engine) as session:
            repo = DunningRepository(session, job.tenant_id)
            record = await repo.get(job.contract_id, job.billing_cycle_index, job.failure_reason)
            cancel_reason: str | None = None
            if record is None:
                cancel_reason = "record not found"
            elif record.completed_at is not None:
                cancel_reason = f"record completed ({record.completed_reason})"
            elif record.attempt_count != job.attempt_count:
                cancel_reason = f"record at attempt {record.attempt_count}, job for attempt {job.attempt_count}"
            elif record.next_attempt_at is None:
                cancel_reason = f"rebill for attempt {job.attempt_count} already sent"
            else:
                record_id, record_version = record.id, record.version

        if cancel_reason is not None:
            logger.info(
                "Rebill cancelled for tenant=%s contract=%s cycle=%d: %s",
                job.tenant_id,
                job.contract_id,
                job.billing_cycle_index,
                cancel_reason,
            )
            return DispatchResult.CANCELLED

        data = {
            "contract_id": job.contract_id,
            "billing_cycle_index": job.billing_cycle_index,
            "failure_reason": job.failure_reason,
            "attempt_count": job.attempt_count,
        }
        request = IndividualChargeRequest(
            contract_id=job.contract_id,
            origin_time=job.origin_time,
            idempotency_key=rebill_idempotency_key(job),
        )
        try:
            attempt_id = await self._client.charge_contract(job.tenant_id, request)
        except UpstreamRejectedError as exc:
            logger.error(
                "Configuration defect: rebill rejected for tenant=%s contract=%s cycle=%d: %s",
                job.tenant_id,
                job.contract_id,
                job.billing_cycle_index,
                exc,
                extra={"tenant_id": job.tenant_id, "contract_id": job.contract_id, "job_id": job.job_id},
            )
            closed = await self._settle(
                job,
                record_id,
                record_version,
                completed_at=datetime.now(UTC),
                completed_reason=CompletionReason.REJECTED.value,
                next_attempt_at=None,
            )
            await self._bus.emit(
                EventType.REBILL_REJECTED,
                tenant_id=job.tenant_id,
                data={**data, "error": str(exc), "user_errors": exc.user_errors, "record_closed": closed},
            )
            return DispatchResult.REJECTED

        await self._settle(job, record_id, record_version, next_attempt_at=None)
        logger.info(
            "Rebill sent for tenant=%s contract=%s cycle=%d attempt=%d (billing_attempt=%s)",
            job.tenant_id,
            job.contract_id,
            job.billing_cycle_index,
            job.attempt_count,
            attempt_id,
        )
        await self._bus.emit(
            EventType.REBILL_REQUESTED,
            tenant_id=job.tenant_id,
            data={**data, "billing_attempt_id": attempt_id},
        )
        return DispatchResult.SENT

    async def _settle(self, job: RebillJob, record_id: int, record_version: int, **values: Any) -> bool:
        """Write *values* to the record unless an outcome report got there first."""
        try:
            async with get_session(self._engine) as session:
                await DunningRepository(session, job.tenant_id).compare_and_set(record_id, record_version, **values)
        except StaleDunningRecordError:
            logger.info(
                "Dunning record for tenant=%s contract=%s cycle=%d moved on while its rebill was in flight",
                job.tenant_id,
                job.contract_id,
                job.billing_cycle_index,
            )
            return False
        return True
