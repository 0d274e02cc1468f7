"""Failure classification and the dunning state machine."""

from billing_engine.dunning.classification import (
    CLASSIFICATION,
    FailureClass,
    FailureReason,
    classify,
    is_persistent,
    parse_failure_reason,
)
from billing_engine.dunning.engine import (
    DunningEngine,
    DunningPolicy,
    DunningResult,
    Transition,
    ends_cycle,
    plan_failure,
)
from billing_engine.dunning.recovery import RebillRecovery, RecoveryResult

__all__ = [
    "CLASSIFICATION",
    "DunningEngine",
    "DunningPolicy",
    "DunningResult",
    "FailureClass",
    "FailureReason",
    "RebillRecovery",
    "RecoveryResult",
    "Transition",
    "classify",
    "ends_cycle",
    "is_persistent",
    "parse_failure_reason",
    "plan_failure",
]
