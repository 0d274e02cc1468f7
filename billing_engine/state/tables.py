"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
uniqueness constraints declared here are load-bearing: the repository layer
relies on them for idempotent inserts and must never be run against a schema
that lacks them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from billing_engine.models.schedule import DEFAULT_BILLING_HOUR, DEFAULT_TIMEZONE


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every dialect.

    PostgreSQL stores ``timestamptz`` natively.  SQLite drops the offset, so
    values are normalised to UTC on the way in and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Billing schedules
# ---------------------------------------------------------------------------


class BillingScheduleTable(Base):
    """One preferred local billing hour per tenant."""

    __tablename__ = "billing_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    hour: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_BILLING_HOUR)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default=DEFAULT_TIMEZONE)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_billing_schedules_tenant"),
        Index("ix_billing_schedules_active", "active"),
    )


# ---------------------------------------------------------------------------
# Dunning records
# ---------------------------------------------------------------------------


class DunningRecordTable(Base):
    """Retry and escalation progress for one failure reason on one billing cycle.

    ``version`` is bumped on every update; writers compare-and-set on it so
    racing duplicate reports cannot both advance the record.
    """

    __tablename__ = "dunning_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    contract_id: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_cycle_index: Mapped[int] = mapped_column(Integer, nullable=False)
    failure_reason: Mapped[str] = mapped_column(String(128), nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False, default="RETRY")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    origin_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_billing_attempt_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "contract_id",
            "billing_cycle_index",
            "failure_reason",
            name="uq_dunning_records_key",
        ),
        Index("ix_dunning_records_cycle", "tenant_id", "contract_id", "billing_cycle_index"),
        Index("ix_dunning_records_next_attempt", "next_attempt_at"),
    )


# ---------------------------------------------------------------------------
# Bulk charge dispatches
# ---------------------------------------------------------------------------


class BulkChargeDispatchTable(Base):
    """Claim row guaranteeing one bulk charge request per tenant and tick."""

    __tablename__ = "bulk_charge_dispatches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tick: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    window_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="CLAIMED")
    upstream_job_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "tick", name="uq_bulk_charge_dispatches_tenant_tick"),
        Index("ix_bulk_charge_dispatches_tenant", "tenant_id"),
    )
