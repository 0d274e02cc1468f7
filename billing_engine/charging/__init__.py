"""Outbound charge requests to the upstream commerce platform."""

from billing_engine.charging.client import UpstreamBillingClient
from billing_engine.charging.dispatchers import BulkChargeDispatcher, DispatchResult, RebillDispatcher

__all__ = [
    "BulkChargeDispatcher",
    "DispatchResult",
    "RebillDispatcher",
    "UpstreamBillingClient",
]
