"""Error taxonomy for the billing engine.

Three families, each handled at a different boundary:

* **Transport / infrastructure** (:class:`TransportError`) -- a request
  could not be delivered or the store was unreachable.  Retried by the
  execution substrate; never produces a dunning record.
* **Configuration defects** (:class:`ConfigurationDefectError`) -- the
  request was well delivered but is wrong (malformed filters, invalid
  schedule rows).  Logged for operator attention and never retried.
* **Concurrency conflicts** (:class:`StaleDunningRecordError`) -- a
  compare-and-set on a dunning record lost a race and must be re-read.

Domain failures (a charge declined for a billing reason) are not
exceptions at all: they arrive as outcome reports and are routed to the
dunning engine.
"""

from __future__ import annotations


class BillingEngineError(Exception):
    """Base class for all billing engine errors."""


class TransportError(BillingEngineError):
    """A request to an external collaborator could not be completed."""


class UpstreamTransportError(TransportError):
    """The upstream platform was unreachable, timed out, or returned 5xx/429."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigurationDefectError(BillingEngineError):
    """A request or stored configuration is invalid; retrying will not help."""


class UpstreamRejectedError(ConfigurationDefectError):
    """The upstream platform accepted the connection but rejected the request."""

    def __init__(self, message: str, *, user_errors: list[dict[str, str]] | None = None) -> None:
        super().__init__(message)
        self.user_errors = user_errors or []


class InvalidScheduleError(ConfigurationDefectError):
    """A stored billing schedule has an out-of-range hour or unknown timezone."""

    def __init__(self, tenant_id: str, reason: str) -> None:
        super().__init__(f"Invalid billing schedule for tenant={tenant_id}: {reason}")
        self.tenant_id = tenant_id
        self.reason = reason


class StaleDunningRecordError(BillingEngineError):
    """A conditional update found a newer version of the dunning record."""

    def __init__(self, record_id: int, expected_version: int) -> None:
        super().__init__(f"Dunning record {record_id} changed concurrently (expected version {expected_version})")
        self.record_id = record_id
        self.expected_version = expected_version
