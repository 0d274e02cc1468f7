"""Billing engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class OnFailureAction(str, Enum):
    """What the upstream platform is asked to do once dunning is exhausted."""

    PAUSE = "pause"
    CANCEL = "cancel"
    SKIP = "skip"


class BillingSettings(BaseSettings):
    """Application settings loaded from environment variables with BILLING_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.billing_engine/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    database_statement_timeout_ms: int = Field(default=30_000, gt=0)
    database_lock_timeout_ms: int = Field(default=10_000, gt=0)

    # Schedule evaluation
    schedule_batch_size: int = Field(default=1000, gt=0)
    lookback_days: int = Field(default=2, gt=0)
    default_billing_hour: int = 10
    default_timezone: str = "America/Toronto"

    # Dunning
    dunning_retry_limit: int = Field(default=3, ge=0)
    dunning_retry_interval_hours: int = Field(default=48, gt=0)
    dunning_penultimate_interval_hours: int = Field(default=72, gt=0)
    dunning_final_interval_hours: int = Field(default=72, gt=0)
    dunning_on_failure: OnFailureAction = OnFailureAction.PAUSE

    # Upstream commerce platform
    upstream_graphql_url: str = "https://{tenant}/admin/api/2024-07/graphql.json"
    upstream_access_token: SecretStr | None = None
    upstream_timeout: float = 15.0

    # Inbound outcome webhooks
    webhook_secret: SecretStr = SecretStr("billing-dev-webhook-secret")

    # Execution substrate
    job_max_retries: int = Field(default=3, ge=0)
    job_retry_base_delay: float = Field(default=2.0, gt=0.0)
    job_retry_max_delay: float = Field(default=60.0, gt=0.0)
    worker_concurrency: int = Field(default=4, gt=0)
    scheduler_enabled: bool = True

    # Telemetry
    structured_logging: bool = False

    @field_validator("default_billing_hour")
    @classmethod
    def _hour_in_range(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError(f"default_billing_hour must be within 0-23, got {v}")
        return v

    @field_validator("default_timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v!r}") from exc
        return v

    @field_validator("upstream_access_token", mode="before")
    @classmethod
    def mask_token_in_repr(cls, v: str | None) -> SecretStr | None:
        if v is None:
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    def is_upstream_configured(self) -> bool:
        return self.upstream_access_token is not None


def load_settings(**overrides: object) -> BillingSettings:
    """Load settings from environment, with optional overrides for testing."""
    settings = BillingSettings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
