"""Billing schedule and charge window models.

A ``BillingSchedule`` is the per-tenant preference for *when* bulk charging
happens: a local wall-clock hour in an IANA timezone.  The store row is
mirrored here as an immutable, validated value object so that the calculator
never sees an out-of-range hour or an unknown zone.
"""

from __future__ import annotations

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_BILLING_HOUR = 10
DEFAULT_TIMEZONE = "America/Toronto"


class BillingSchedule(BaseModel):
    """A tenant's preferred local billing hour."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    tenant_id: str = Field(
        ...,
        min_length=1,
        description="Opaque, stable tenant identifier.",
    )
    hour: int = Field(
        default=DEFAULT_BILLING_HOUR,
        ge=0,
        le=23,
        description="Local hour of day (0-23) at which bulk charging runs.",
    )
    timezone: str = Field(
        default=DEFAULT_TIMEZONE,
        description="IANA timezone name the hour is expressed in.",
    )
    active: bool = Field(
        default=True,
        description="Inactive schedules are never evaluated.",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v!r}") from exc
        return v

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class ChargeWindow(BaseModel):
    """The expected-billing-date range swept by one bulk charge request."""

    model_config = ConfigDict(frozen=True)

    start: AwareDatetime = Field(..., description="Inclusive lower bound (UTC).")
    end: AwareDatetime = Field(..., description="Inclusive upper bound (UTC).")

    @model_validator(mode="after")
    def validate_start_before_end(self) -> ChargeWindow:
        if self.start > self.end:
            raise ValueError(f"ChargeWindow start ({self.start}) must be <= end ({self.end}).")
        return self
