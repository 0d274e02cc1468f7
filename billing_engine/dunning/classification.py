"""Failure taxonomy and its classification table.

Every failure code the upstream platform is known to report is a member of
:class:`FailureReason`, and :data:`CLASSIFICATION` maps each member to a
:class:`FailureClass`.  The table is exhaustive over the enum; codes the
platform introduces later are not members and classify as retryable.
"""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class FailureClass(str, Enum):
    """Whether retrying the same billing cycle can ever succeed."""

    PERSISTENT = "PERSISTENT"
    RETRYABLE = "RETRYABLE"


class FailureReason(str, Enum):
    """Canonical billing attempt error codes reported upstream."""

    # Contract or cycle no longer chargeable.
    CONTRACT_PAUSED = "CONTRACT_PAUSED"
    CONTRACT_TERMINATED = "CONTRACT_TERMINATED"
    BILLING_CYCLE_SKIPPED = "BILLING_CYCLE_SKIPPED"
    BILLING_CYCLE_CHARGE_BEFORE_EXPECTED_DATE = "BILLING_CYCLE_CHARGE_BEFORE_EXPECTED_DATE"

    # Payment method problems.
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    PAYMENT_METHOD_DECLINED = "PAYMENT_METHOD_DECLINED"
    PAYMENT_METHOD_NOT_FOUND = "PAYMENT_METHOD_NOT_FOUND"
    EXPIRED_PAYMENT_METHOD = "EXPIRED_PAYMENT_METHOD"
    INVALID_PAYMENT_METHOD = "INVALID_PAYMENT_METHOD"
    CARD_NUMBER_INCORRECT = "CARD_NUMBER_INCORRECT"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    BUYER_CANCELED_PAYMENT_METHOD = "BUYER_CANCELED_PAYMENT_METHOD"
    FRAUD_SUSPECTED = "FRAUD_SUSPECTED"

    # Order construction problems.
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    INVENTORY_ALLOCATIONS_NOT_FOUND = "INVENTORY_ALLOCATIONS_NOT_FOUND"
    INVALID_SHIPPING_ADDRESS = "INVALID_SHIPPING_ADDRESS"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    AMOUNT_TOO_SMALL = "AMOUNT_TOO_SMALL"

    # Platform side.
    PAYMENT_PROVIDER_IS_NOT_ENABLED = "PAYMENT_PROVIDER_IS_NOT_ENABLED"
    TRANSIENT_ERROR = "TRANSIENT_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


_P = FailureClass.PERSISTENT
_R = FailureClass.RETRYABLE

CLASSIFICATION: dict[FailureReason, FailureClass] = {
    FailureReason.CONTRACT_PAUSED: _P,
    FailureReason.CONTRACT_TERMINATED: _P,
    FailureReason.BILLING_CYCLE_SKIPPED: _P,
    FailureReason.BILLING_CYCLE_CHARGE_BEFORE_EXPECTED_DATE: _P,
    FailureReason.INSUFFICIENT_FUNDS: _R,
    FailureReason.PAYMENT_METHOD_DECLINED: _R,
    FailureReason.PAYMENT_METHOD_NOT_FOUND: _R,
    FailureReason.EXPIRED_PAYMENT_METHOD: _R,
    FailureReason.INVALID_PAYMENT_METHOD: _R,
    FailureReason.CARD_NUMBER_INCORRECT: _R,
    FailureReason.AUTHENTICATION_ERROR: _R,
    FailureReason.BUYER_CANCELED_PAYMENT_METHOD: _R,
    FailureReason.FRAUD_SUSPECTED: _R,
    FailureReason.INSUFFICIENT_INVENTORY: _R,
    FailureReason.INVENTORY_ALLOCATIONS_NOT_FOUND: _R,
    FailureReason.INVALID_SHIPPING_ADDRESS: _R,
    FailureReason.CUSTOMER_NOT_FOUND: _R,
    FailureReason.AMOUNT_TOO_SMALL: _R,
    FailureReason.PAYMENT_PROVIDER_IS_NOT_ENABLED: _R,
    FailureReason.TRANSIENT_ERROR: _R,
    FailureReason.UNEXPECTED_ERROR: _R,
}


def parse_failure_reason(code: str) -> FailureReason | None:
    """Return the enum member for *code*, or ``None`` for unrecognised codes."""
    try:
        return FailureReason(code.strip().upper())
    except ValueError:
        return None


def classify(code: str) -> FailureClass:
    """Classify a raw failure code reported upstream."""
    reason = parse_failure_reason(code)
    if reason is None:
        logger.warning("Unrecognised failure reason %r; treating as retryable", code)
        return FailureClass.RETRYABLE
    return CLASSIFICATION[reason]


def is_persistent(code: str) -> bool:
    return classify(code) is FailureClass.PERSISTENT
