"""Liveness endpoint with a state store connectivity check."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from billing_engine import __version__
from billing_engine.api.dependencies import EngineDep, JobQueueDep
from billing_engine.jobs.queue import AsyncioJobQueue

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(engine: EngineDep, queue: JobQueueDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200 so load-balancers see the process as alive; ``db`` and
    ``workers`` report whether the dependencies are usable.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "workers": "ok",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
        result["status"] = "degraded"

    if isinstance(queue, AsyncioJobQueue) and not queue.running:
        result["workers"] = "stopped"
        result["status"] = "degraded"

    return result
