"""Tests for BillingSettings environment loading and validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from billing_engine.config import BillingSettings, OnFailureAction, PlatformEnv, load_settings
from billing_engine.retry import RetryConfig


class TestBillingSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BILLING_DATABASE_URL", raising=False)
        settings = BillingSettings(_env_file=None)
        assert settings.env is PlatformEnv.DEV
        assert settings.schedule_batch_size == 1000
        assert settings.lookback_days == 2
        assert settings.default_billing_hour == 10
        assert settings.default_timezone == "America/Toronto"
        assert settings.dunning_retry_limit == 3
        assert settings.dunning_on_failure is OnFailureAction.PAUSE
        assert settings.upstream_access_token is None
        assert not settings.is_upstream_configured()

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("BILLING_ENV", "prod")
        monkeypatch.setenv("BILLING_DUNNING_RETRY_LIMIT", "5")
        monkeypatch.setenv("BILLING_DUNNING_ON_FAILURE", "skip")
        monkeypatch.setenv("BILLING_UPSTREAM_ACCESS_TOKEN", "shpat_secret")
        settings = BillingSettings(_env_file=None)
        assert settings.env is PlatformEnv.PROD
        assert settings.dunning_retry_limit == 5
        assert settings.dunning_on_failure is OnFailureAction.SKIP
        assert settings.is_upstream_configured()
        assert "shpat_secret" not in repr(settings)
        assert settings.upstream_access_token.get_secret_value() == "shpat_secret"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"default_billing_hour": 24},
            {"default_timezone": "Not/AZone"},
            {"schedule_batch_size": 0},
            {"dunning_retry_limit": -1},
            {"dunning_on_failure": "refund"},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            load_settings(**overrides)

    def test_retry_config_from_settings(self):
        settings = load_settings(job_max_retries=7, job_retry_base_delay=0.5, job_retry_max_delay=9.0)
        config = RetryConfig.from_settings(settings)
        assert (config.max_retries, config.base_delay, config.max_delay) == (7, 0.5, 9.0)
