"""Tests for the failure taxonomy and classification table."""

from __future__ import annotations

import pytest

from billing_engine.dunning.classification import (
    CLASSIFICATION,
    FailureClass,
    FailureReason,
    classify,
    is_persistent,
    parse_failure_reason,
)

_PERSISTENT = {
    "CONTRACT_PAUSED",
    "BILLING_CYCLE_SKIPPED",
    "CONTRACT_TERMINATED",
    "BILLING_CYCLE_CHARGE_BEFORE_EXPECTED_DATE",
}


class TestClassificationTable:
    def test_table_is_exhaustive(self):
        assert set(CLASSIFICATION) == set(FailureReason)

    def test_exactly_four_persistent_reasons(self):
        persistent = {r.value for r, c in CLASSIFICATION.items() if c is FailureClass.PERSISTENT}
        assert persistent == _PERSISTENT

    @pytest.mark.parametrize("code", sorted(_PERSISTENT))
    def test_persistent_codes(self, code: str):
        assert classify(code) is FailureClass.PERSISTENT
        assert is_persistent(code)

    @pytest.mark.parametrize("code", ["INSUFFICIENT_FUNDS", "PAYMENT_METHOD_DECLINED", "UNEXPECTED_ERROR"])
    def test_retryable_codes(self, code: str):
        assert classify(code) is FailureClass.RETRYABLE
        assert not is_persistent(code)


class TestUnknownCodes:
    def test_unknown_code_is_retryable(self, caplog):
        with caplog.at_level("WARNING"):
            assert classify("SOMETHING_NEW") is FailureClass.RETRYABLE
        assert "SOMETHING_NEW" in caplog.text

    def test_parse_is_case_and_whitespace_insensitive(self):
        assert parse_failure_reason("  contract_paused ") is FailureReason.CONTRACT_PAUSED

    def test_parse_unknown_returns_none(self):
        assert parse_failure_reason("NOPE") is None
