"""Lightweight event bus for billing and dunning signals.

Signals are how this engine asks the outside world to act: notify a
customer that a final attempt is coming, or ask the upstream platform to
pause a contract whose dunning is exhausted.  Emission is fire-and-forget;
handler errors are logged but never propagate to the billing path.

Usage::

    bus = get_event_bus()
    await bus.emit(EventType.DUNNING_EXHAUSTED, tenant_id="shop-1", data={...})
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Signals emitted by the billing engine."""

    BULK_CHARGE_REQUESTED = "billing.bulk_charge_requested"
    BULK_CHARGE_REJECTED = "billing.bulk_charge_rejected"
    REBILL_REQUESTED = "billing.rebill_requested"
    REBILL_REJECTED = "billing.rebill_rejected"
    DUNNING_RETRY_SCHEDULED = "dunning.retry_scheduled"
    DUNNING_PENULTIMATE_ATTEMPT = "dunning.penultimate_attempt"
    DUNNING_FINAL_ATTEMPT = "dunning.final_attempt"
    DUNNING_EXHAUSTED = "dunning.exhausted"
    DUNNING_TERMINATED = "dunning.terminated"
    DUNNING_RESOLVED = "dunning.resolved"


# ---------------------------------------------------------------------------
# Event payload
# ---------------------------------------------------------------------------


class EventPayload(BaseModel):
    """Structured event payload dispatched to handlers."""

    event_type: EventType
    tenant_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[EventPayload], Awaitable[None]]


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class EventBus:
    """In-process event bus with async handler dispatch.

    Handlers are called concurrently via ``asyncio.gather``.  Each handler
    runs in a ``try / except`` so that a single failing handler does not
    affect others or the caller.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def register_handler(
        self,
        handler: EventHandler,
        *,
        event_type: EventType | None = None,
    ) -> None:
        """Register a handler for a specific event type, or all events when ``None``."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            "Registered event handler %s for %s",
            getattr(handler, "__name__", repr(handler)),
            event_type or "ALL",
        )

    async def emit(
        self,
        event_type: EventType,
        *,
        tenant_id: str,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Emit an event to all matching handlers.  Handler exceptions are logged, not raised."""
        payload = EventPayload(
            event_type=event_type,
            tenant_id=tenant_id,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._handlers.get(None, []))

        if not handlers:
            logger.debug("No handlers for event %s", event_type.value)
            return

        async def _safe_call(handler: EventHandler) -> None:
            try:
                await handler(payload)
            except Exception:
                logger.exception(
                    "Handler %s failed for event %s (tenant=%s)",
                    getattr(handler, "__name__", repr(handler)),
                    event_type.value,
                    tenant_id,
                )

        await asyncio.gather(*[_safe_call(h) for h in handlers])

    @property
    def handler_count(self) -> int:
        """Total number of registered handlers across all event types."""
        return sum(len(v) for v in self._handlers.values())


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


async def signal_log_handler(payload: EventPayload) -> None:
    """Record every signal in the application log."""
    logger.info(
        "SIGNAL: %s tenant=%s corr=%s data=%s",
        payload.event_type.value,
        payload.tenant_id,
        payload.correlation_id[:8],
        payload.data,
    )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_event_bus: EventBus | None = None


def init_event_bus() -> EventBus:
    """Create the global event bus with the built-in log handler."""
    global _event_bus  # noqa: PLW0603
    _event_bus = EventBus()
    _event_bus.register_handler(signal_log_handler)
    logger.info("Event bus initialised with %d handler(s)", _event_bus.handler_count)
    return _event_bus


def get_event_bus() -> EventBus:
    """Return the module-level event bus instance."""
    if _event_bus is None:
        return init_event_bus()
    return _event_bus
