"""Logging setup and a JSON formatter for log aggregation.

Emits each log record as a single-line JSON object that aggregators
(Datadog, CloudWatch Logs, ELK, etc.) can index without regex parsing.

Activate by setting ``BILLING_STRUCTURED_LOGGING=true``.

Output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "billing_engine.dunning.engine",
        "message": "dunning record advanced",
        "tenant_id": "shop-1",        // present when passed via ``extra``
        "job_id": "4f1c...",          // present when passed via ``extra``
        "exc_info": "Traceback ..."   // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Context attributes copied from ``extra={...}`` into the JSON payload.
_CONTEXT_FIELDS = ("tenant_id", "job_id", "job_kind", "contract_id", "billing_cycle_index")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(*, structured: bool = False, level: int = logging.INFO) -> None:
    """Install a single root handler, JSON or plain text."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    if structured:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    if structured:
        logging.getLogger(__name__).info("Structured JSON logging enabled")
