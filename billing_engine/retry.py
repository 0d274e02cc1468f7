"""Exponential backoff for transient infrastructure errors.

Used by the job queue backends to re-run a unit of work when a transport
or store error escapes it.  Domain failures never reach this layer.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from billing_engine.config import BillingSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )

    @classmethod
    def from_settings(cls, settings: BillingSettings) -> RetryConfig:
        return cls(
            max_retries=settings.job_max_retries,
            base_delay=settings.job_retry_base_delay,
            max_delay=settings.job_retry_max_delay,
        )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    label: str = "operation",
) -> T:
    """Await *fn* with exponential backoff between retryable failures.

    Parameters
    ----------
    fn:
        A zero-argument callable returning an awaitable.  It is invoked from
        scratch on every attempt and must be safe to call repeatedly.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Only exceptions whose type appears in this tuple trigger a retry.
        All other exceptions propagate immediately.
    label:
        Human-readable name used in log lines.

    Returns
    -------
    T
        The result of the first successful call.

    Raises
    ------
    Exception
        The last retryable exception once all attempts are exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = _compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d of %s after %.1fs: %s",
                attempt + 1,
                config.max_retries,
                label,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception
