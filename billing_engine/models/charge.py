"""Charge requests sent upstream and outcome reports received back."""

from __future__ import annotations

from enum import Enum

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator, model_validator


class ContractStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class BillingCycleStatus(str, Enum):
    BILLED = "BILLED"
    UNBILLED = "UNBILLED"


class BillingAttemptStatus(str, Enum):
    NO_ATTEMPT = "NO_ATTEMPT"


class ChargeOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class EligibilityFilters(BaseModel):
    """Which billing cycles a bulk charge request may touch."""

    model_config = ConfigDict(frozen=True)

    contract_statuses: tuple[ContractStatus, ...] = (ContractStatus.ACTIVE,)
    billing_cycle_statuses: tuple[BillingCycleStatus, ...] = (BillingCycleStatus.UNBILLED,)
    billing_attempt_status: BillingAttemptStatus = BillingAttemptStatus.NO_ATTEMPT

    @model_validator(mode="after")
    def validate_not_empty(self) -> EligibilityFilters:
        if not self.contract_statuses:
            raise ValueError("contract_statuses must not be empty")
        if not self.billing_cycle_statuses:
            raise ValueError("billing_cycle_statuses must not be empty")
        return self


class BulkChargeRequest(BaseModel):
    """Parameters for one upstream bulk charge over a window of cycles."""

    start_date: AwareDatetime
    end_date: AwareDatetime
    filters: EligibilityFilters = Field(default_factory=EligibilityFilters)
    idempotency_key: str = Field(..., min_length=1)


class IndividualChargeRequest(BaseModel):
    """Parameters for a targeted retry of one contract's billing cycle."""

    contract_id: str = Field(..., min_length=1)
    origin_time: AwareDatetime
    idempotency_key: str = Field(..., min_length=1)


class ChargeOutcomeReport(BaseModel):
    """An inbound notification that a billing attempt succeeded or failed.

    ``billing_attempt_id`` identifies the upstream attempt and is what makes
    re-delivered reports detectable.  ``origin_time`` is the cycle's expected
    billing date when the platform supplies it; targeted retries are anchored
    on it.
    """

    tenant_id: str = Field(..., min_length=1)
    contract_id: str = Field(..., min_length=1)
    billing_cycle_index: int = Field(..., ge=0)
    outcome: ChargeOutcome
    failure_reason: str | None = None
    billing_attempt_id: str = Field(..., min_length=1)
    occurred_at: AwareDatetime
    origin_time: AwareDatetime | None = None

    @field_validator("failure_reason")
    @classmethod
    def normalise_failure_reason(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip().upper() or None

    @model_validator(mode="after")
    def validate_failure_reason(self) -> ChargeOutcomeReport:
        if self.outcome is ChargeOutcome.FAILURE and not self.failure_reason:
            raise ValueError("failure_reason is required when outcome is FAILURE")
        return self
