"""Domain models for the billing engine."""

from billing_engine.models.charge import (
    BillingAttemptStatus,
    BillingCycleStatus,
    BulkChargeRequest,
    ChargeOutcome,
    ChargeOutcomeReport,
    ContractStatus,
    EligibilityFilters,
    IndividualChargeRequest,
)
from billing_engine.models.dunning import (
    RESOLVED_CYCLE_REASON,
    CompletionReason,
    DunningKey,
    DunningState,
    DunningTier,
)
from billing_engine.models.schedule import (
    DEFAULT_BILLING_HOUR,
    DEFAULT_TIMEZONE,
    BillingSchedule,
    ChargeWindow,
)

__all__ = [
    "DEFAULT_BILLING_HOUR",
    "DEFAULT_TIMEZONE",
    "RESOLVED_CYCLE_REASON",
    "BillingAttemptStatus",
    "BillingCycleStatus",
    "BillingSchedule",
    "BulkChargeRequest",
    "ChargeOutcome",
    "ChargeOutcomeReport",
    "ChargeWindow",
    "CompletionReason",
    "ContractStatus",
    "DunningKey",
    "DunningState",
    "DunningTier",
    "EligibilityFilters",
    "IndividualChargeRequest",
]
