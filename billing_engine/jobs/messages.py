"""Units of work handed to the execution substrate.

Each message is a self-contained, serialisable pydantic model; nothing is
passed to a handler except the message itself.  ``dedup_key`` identifies
the *logical* unit of work so that a substrate can drop duplicates of the
same tick, charge, or report.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Literal

from pydantic import AwareDatetime, BaseModel, Field, TypeAdapter

from billing_engine.models.charge import ChargeOutcomeReport, EligibilityFilters
from billing_engine.models.schedule import ChargeWindow


class _JobBase(BaseModel):
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)


class EvaluateSchedulesJob(_JobBase):
    """Evaluate every active schedule against one hourly tick."""

    kind: Literal["evaluate_schedules"] = "evaluate_schedules"
    tick: AwareDatetime

    @property
    def dedup_key(self) -> str:
        return f"tick:{self.tick.isoformat()}"


class BulkChargeJob(_JobBase):
    """Issue one bulk charge for a due tenant."""

    kind: Literal["bulk_charge"] = "bulk_charge"
    tenant_id: str = Field(..., min_length=1)
    tick: AwareDatetime
    window: ChargeWindow
    filters: EligibilityFilters = Field(default_factory=EligibilityFilters)

    @property
    def dedup_key(self) -> str:
        return f"bulk:{self.tenant_id}:{self.tick.isoformat()}"


class RebillJob(_JobBase):
    """Retry one billing cycle on behalf of an open dunning record.

    ``attempt_count`` is the record's count when the retry was scheduled;
    a record that has moved on since makes the job obsolete.
    """

    kind: Literal["rebill"] = "rebill"
    tenant_id: str = Field(..., min_length=1)
    contract_id: str = Field(..., min_length=1)
    billing_cycle_index: int = Field(..., ge=0)
    failure_reason: str = Field(..., min_length=1)
    attempt_count: int = Field(..., ge=1)
    origin_time: AwareDatetime

    @property
    def dedup_key(self) -> str:
        return (
            f"rebill:{self.tenant_id}:{self.contract_id}:{self.billing_cycle_index}:"
            f"{self.failure_reason}:{self.attempt_count}"
        )


class ChargeOutcomeJob(_JobBase):
    """Apply one inbound charge outcome report to dunning state."""

    kind: Literal["charge_outcome"] = "charge_outcome"
    report: ChargeOutcomeReport

    @property
    def dedup_key(self) -> str:
        return f"outcome:{self.report.tenant_id}:{self.report.billing_attempt_id}:{self.report.outcome.value}"


Job = Annotated[
    EvaluateSchedulesJob | BulkChargeJob | RebillJob | ChargeOutcomeJob,
    Field(discriminator="kind"),
]

_JOB_ADAPTER: TypeAdapter[Job] = TypeAdapter(Job)


def parse_job(raw: str | bytes) -> Job:
    """Deserialise a job from its JSON form."""
    return _JOB_ADAPTER.validate_json(raw)


def dump_job(job: Job) -> str:
    return job.model_dump_json()
