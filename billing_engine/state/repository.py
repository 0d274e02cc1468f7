"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import StaleDunningRecordError
from billing_engine.models.schedule import DEFAULT_BILLING_HOUR, DEFAULT_TIMEZONE, ChargeWindow
from billing_engine.state.tables import (
    BillingScheduleTable,
    BulkChargeDispatchTable,
    DunningRecordTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_insert_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """Insert a row unless it collides on *index_elements*.

    Returns ``True`` when a row was inserted.  The check and the insert are
    a single statement, so two racing callers cannot both win.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# BillingScheduleRepository
# ---------------------------------------------------------------------------


class BillingScheduleRepository:
    """Access to the ``billing_schedules`` table.

    Unlike the other repositories this one is not tenant-scoped: the hourly
    evaluation scans every tenant's schedule.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> BillingScheduleTable | None:
        stmt = select(BillingScheduleTable).where(BillingScheduleTable.tenant_id == tenant_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def ensure(
        self,
        tenant_id: str,
        hour: int = DEFAULT_BILLING_HOUR,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> BillingScheduleTable:
        """Create the tenant's schedule with onboarding defaults if it is missing.

        An existing schedule is returned untouched.
        """
        now = datetime.now(UTC)
        inserted = await _dialect_insert_ignore(
            self._session,
            BillingScheduleTable,
            values={
                "tenant_id": tenant_id,
                "hour": hour,
                "timezone": timezone,
                "active": True,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id"],
        )
        await self._session.flush()
        if inserted:
            logger.info("Created billing schedule for tenant=%s hour=%d tz=%s", tenant_id, hour, timezone)
        return await self.get(tenant_id)  # type: ignore[return-value]

    async def upsert(
        self,
        tenant_id: str,
        hour: int,
        timezone: str,
        active: bool = True,
    ) -> BillingScheduleTable:
        """Create or replace the tenant's billing hour preference."""
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            BillingScheduleTable,
            values={
                "tenant_id": tenant_id,
                "hour": hour,
                "timezone": timezone,
                "active": active,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id"],
            update_columns=["hour", "timezone", "active", "updated_at"],
        )
        await self._session.flush()
        return await self.get(tenant_id)  # type: ignore[return-value]

    async def deactivate(self, tenant_id: str) -> bool:
        """Mark the tenant's schedule inactive.  Returns ``False`` if absent."""
        stmt = (
            update(BillingScheduleTable)
            .where(BillingScheduleTable.tenant_id == tenant_id)
            .values(active=False, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def count_active(self) -> int:
        stmt = select(func.count()).select_from(BillingScheduleTable).where(
            BillingScheduleTable.active == True  # noqa: E712
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_active_page(self, offset: int, limit: int) -> list[BillingScheduleTable]:
        """Return one page of active schedules in stable ``id`` order."""
        stmt = (
            select(BillingScheduleTable)
            .where(BillingScheduleTable.active == True)  # noqa: E712
            .order_by(BillingScheduleTable.id)
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(self, *, include_inactive: bool = True) -> list[BillingScheduleTable]:
        stmt = select(BillingScheduleTable).order_by(BillingScheduleTable.tenant_id)
        if not include_inactive:
            stmt = stmt.where(BillingScheduleTable.active == True)  # noqa: E712
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# DunningRepository
# ---------------------------------------------------------------------------


class DunningRepository:
    """Access to the ``dunning_records`` table for one tenant.

    Writes go through :meth:`compare_and_set`, which only succeeds against
    the version the caller read.  Reads always refresh from the database so
    a retried decision never works from a stale identity-map copy.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(
        self,
        contract_id: str,
        billing_cycle_index: int,
        failure_reason: str,
    ) -> DunningRecordTable | None:
        stmt = select(DunningRecordTable).where(
            DunningRecordTable.tenant_id == self._tenant_id,
            DunningRecordTable.contract_id == contract_id,
            DunningRecordTable.billing_cycle_index == billing_cycle_index,
            DunningRecordTable.failure_reason == failure_reason,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        contract_id: str,
        billing_cycle_index: int,
        failure_reason: str,
        origin_time: datetime | None = None,
    ) -> DunningRecordTable:
        """Return the record for the key, inserting a fresh one if absent.

        The fresh record starts at tier ``RETRY`` with no attempts; the
        caller applies the triggering failure as an ordinary transition.
        """
        now = datetime.now(UTC)
        inserted = await _dialect_insert_ignore(
            self._session,
            DunningRecordTable,
            values={
                "tenant_id": self._tenant_id,
                "contract_id": contract_id,
                "billing_cycle_index": billing_cycle_index,
                "failure_reason": failure_reason,
                "tier": "RETRY",
                "attempt_count": 0,
                "origin_time": origin_time,
                "version": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id", "contract_id", "billing_cycle_index", "failure_reason"],
        )
        await self._session.flush()
        if inserted:
            logger.debug(
                "Opened dunning record tenant=%s contract=%s cycle=%d reason=%s",
                self._tenant_id,
                contract_id,
                billing_cycle_index,
                failure_reason,
            )
        return await self.get(contract_id, billing_cycle_index, failure_reason)  # type: ignore[return-value]

    async def compare_and_set(
        self,
        record_id: int,
        expected_version: int,
        **values: Any,
    ) -> None:
        """Apply *values* only if the record is still at *expected_version*.

        Raises
        ------
        StaleDunningRecordError
            If another writer updated the record first.
        """
        stmt = (
            update(DunningRecordTable)
            .where(
                DunningRecordTable.id == record_id,
                DunningRecordTable.tenant_id == self._tenant_id,
                DunningRecordTable.version == expected_version,
            )
            .values(
                **values,
                version=expected_version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise StaleDunningRecordError(record_id, expected_version)

    async def list_for_cycle(
        self,
        contract_id: str,
        billing_cycle_index: int,
    ) -> list[DunningRecordTable]:
        stmt = (
            select(DunningRecordTable)
            .where(
                DunningRecordTable.tenant_id == self._tenant_id,
                DunningRecordTable.contract_id == contract_id,
                DunningRecordTable.billing_cycle_index == billing_cycle_index,
            )
            .order_by(DunningRecordTable.id)
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_rejected(self, limit: int = 100) -> list[DunningRecordTable]:
        """Return records closed because their rebill was refused upstream, newest first."""
        stmt = (
            select(DunningRecordTable)
            .where(
                DunningRecordTable.tenant_id == self._tenant_id,
                DunningRecordTable.completed_reason == "REJECTED",
            )
            .order_by(DunningRecordTable.completed_at.desc(), DunningRecordTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def record_resolution(
        self,
        contract_id: str,
        billing_cycle_index: int,
        failure_reason: str,
        *,
        resolved_at: datetime,
        billing_attempt_id: str,
    ) -> bool:
        """Insert an already-resolved record for a key that has none yet.

        Returns ``True`` when the row was inserted, ``False`` when the key
        already had a record (which is left untouched).
        """
        now = datetime.now(UTC)
        inserted = await _dialect_insert_ignore(
            self._session,
            DunningRecordTable,
            values={
                "tenant_id": self._tenant_id,
                "contract_id": contract_id,
                "billing_cycle_index": billing_cycle_index,
                "failure_reason": failure_reason,
                "tier": "RETRY",
                "attempt_count": 0,
                "last_billing_attempt_id": billing_attempt_id,
                "completed_at": resolved_at,
                "completed_reason": "RESOLVED",
                "version": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id", "contract_id", "billing_cycle_index", "failure_reason"],
        )
        await self._session.flush()
        return inserted

    async def list_open(self, limit: int = 100) -> list[DunningRecordTable]:
        """Return open records, soonest scheduled retry first."""
        stmt = (
            select(DunningRecordTable)
            .where(
                DunningRecordTable.tenant_id == self._tenant_id,
                DunningRecordTable.completed_at.is_(None),
            )
            .order_by(DunningRecordTable.next_attempt_at, DunningRecordTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# PendingRebillRepository
# ---------------------------------------------------------------------------


class PendingRebillRepository:
    """Open dunning records that still owe a rebill, across all tenants.

    A record owes a rebill while it is open and ``next_attempt_at`` is set;
    the rebill dispatcher clears ``next_attempt_at`` once the rebill is sent.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_pending(
        self,
        *,
        after_id: int = 0,
        limit: int = 1000,
        due_before: datetime | None = None,
    ) -> list[DunningRecordTable]:
        """Return up to *limit* owing records with ``id > after_id``, in ``id`` order.

        With *due_before*, only records whose ``next_attempt_at`` is at or
        before it are returned.
        """
        stmt = select(DunningRecordTable).where(
            DunningRecordTable.id > after_id,
            DunningRecordTable.completed_at.is_(None),
            DunningRecordTable.next_attempt_at.is_not(None),
            DunningRecordTable.attempt_count > 0,
        )
        if due_before is not None:
            stmt = stmt.where(DunningRecordTable.next_attempt_at <= due_before)
        stmt = stmt.order_by(DunningRecordTable.id).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# BulkChargeDispatchRepository
# ---------------------------------------------------------------------------


class BulkChargeDispatchRepository:
    """Claims on ``bulk_charge_dispatches`` -- one per tenant and tick."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def claim(self, tick: datetime, window: ChargeWindow) -> bool:
        """Atomically claim the tick.  Returns ``False`` if already claimed."""
        now = datetime.now(UTC)
        claimed = await _dialect_insert_ignore(
            self._session,
            BulkChargeDispatchTable,
            values={
                "tenant_id": self._tenant_id,
                "tick": tick,
                "window_start": window.start,
                "window_end": window.end,
                "status": "CLAIMED",
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id", "tick"],
        )
        await self._session.flush()
        return claimed

    async def get(self, tick: datetime) -> BulkChargeDispatchTable | None:
        stmt = select(BulkChargeDispatchTable).where(
            BulkChargeDispatchTable.tenant_id == self._tenant_id,
            BulkChargeDispatchTable.tick == tick,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def mark_accepted(self, tick: datetime, upstream_job_id: str | None) -> None:
        await self._set_status(tick, status="ACCEPTED", upstream_job_id=upstream_job_id)

    async def mark_rejected(self, tick: datetime, error: str) -> None:
        await self._set_status(tick, status="REJECTED", error=error)

    async def _set_status(self, tick: datetime, **values: Any) -> None:
        stmt = (
            update(BulkChargeDispatchTable)
            .where(
                BulkChargeDispatchTable.tenant_id == self._tenant_id,
                BulkChargeDispatchTable.tick == tick,
            )
            .values(**values, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()
