"""FastAPI dependency injection for settings, the state store, and the job queue.

The runtime objects are created by the application lifespan and kept on
``app.state``; tests assign them directly.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine

from billing_engine.config import BillingSettings
from billing_engine.jobs.queue import JobQueue


def get_settings(request: Request) -> BillingSettings:
    return request.app.state.settings


def get_engine(request: Request) -> AsyncEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="State store not initialised")
    return engine


def get_job_queue(request: Request) -> JobQueue:
    queue = getattr(request.app.state, "job_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Job queue not initialised")
    return queue


SettingsDep = Annotated[BillingSettings, Depends(get_settings)]
EngineDep = Annotated[AsyncEngine, Depends(get_engine)]
JobQueueDep = Annotated[JobQueue, Depends(get_job_queue)]
