"""Dunning record models.

A dunning record tracks one failure reason on one billing cycle.  While
``completed_at`` is unset the record is *open* at some escalation tier;
once set, the record is terminal and immutable.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DunningTier(str, Enum):
    """Escalation level of an open dunning record."""

    RETRY = "RETRY"
    PENULTIMATE = "PENULTIMATE"
    FINAL = "FINAL"


class CompletionReason(str, Enum):
    """Terminal reasons that are not themselves failure codes.

    Records closed by a persistent failure store that failure code as their
    ``completed_reason`` instead.  ``REJECTED`` closes a record whose rebill
    the upstream platform refused; it needs an operator, not another retry.
    """

    RESOLVED = "RESOLVED"
    EXHAUSTED = "EXHAUSTED"
    REJECTED = "REJECTED"


# ``failure_reason`` of the marker row stored when a cycle is paid before any
# of its failures has been seen.  Marker rows are born resolved and never
# carry an attempt.
RESOLVED_CYCLE_REASON = "*"


class DunningKey(BaseModel):
    """Natural unique key of a dunning record."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    contract_id: str
    billing_cycle_index: int = Field(..., ge=0)
    failure_reason: str

    def __str__(self) -> str:
        return f"{self.tenant_id}/{self.contract_id}/{self.billing_cycle_index}/{self.failure_reason}"


class DunningState(BaseModel):
    """Read-only snapshot of a dunning record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    contract_id: str
    billing_cycle_index: int
    failure_reason: str
    tier: DunningTier
    attempt_count: int
    origin_time: datetime | None = None
    next_attempt_at: datetime | None = None
    last_billing_attempt_id: str | None = None
    last_failure_at: datetime | None = None
    completed_at: datetime | None = None
    completed_reason: str | None = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    @property
    def key(self) -> DunningKey:
        return DunningKey(
            tenant_id=self.tenant_id,
            contract_id=self.contract_id,
            billing_cycle_index=self.billing_cycle_index,
            failure_reason=self.failure_reason,
        )
