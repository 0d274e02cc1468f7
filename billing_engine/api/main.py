"""FastAPI application entry-point for the billing engine service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_engine import __version__
from billing_engine.api.routers import health, webhooks
from billing_engine.charging.client import UpstreamBillingClient
from billing_engine.config import BillingSettings, PlatformEnv, load_settings
from billing_engine.events import init_event_bus
from billing_engine.jobs.queue import AsyncioJobQueue
from billing_engine.jobs.worker import BillingWorker
from billing_engine.log_format import configure_logging
from billing_engine.retry import RetryConfig
from billing_engine.scheduling.ticker import HourlyTicker
from billing_engine.state.database import engine_from_settings
from billing_engine.state.sqlite_adapter import create_local_tables

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


async def recover_pending_rebills(worker: BillingWorker) -> None:
    """Put owed rebills back on a freshly started queue.

    A store error is logged and startup continues; the next tick re-enqueues
    whatever is due by then.
    """
    try:
        result = await worker.recovery.enqueue_pending(datetime.now(UTC))
    except SQLAlchemyError:
        logger.error("Could not recover owed rebills at startup", exc_info=True)
        return
    logger.info("Recovered %d owed rebill(s) at startup", len(result.enqueued))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Configure logging and the event bus.
    - Create the state store engine (and tables for local SQLite or dev).
    - Start the job queue workers and re-enqueue the rebills that open
      dunning records still owe.
    - Start the hourly ticker when enabled.

    On shutdown everything is stopped in reverse order.
    """
    settings: BillingSettings = app.state.settings
    configure_logging(structured=settings.structured_logging, level=logging.DEBUG if settings.debug else logging.INFO)

    event_bus = init_event_bus()

    engine = engine_from_settings(settings)
    is_local = settings.database_url.startswith("sqlite")
    if settings.env == PlatformEnv.DEV or is_local:
        await create_local_tables(engine)

    client = UpstreamBillingClient.from_settings(settings)
    queue = AsyncioJobQueue(
        concurrency=settings.worker_concurrency,
        retry_config=RetryConfig.from_settings(settings),
    )
    worker = BillingWorker(engine, queue, client, settings, event_bus=event_bus)
    queue.bind(worker.handle)
    await queue.start()
    await recover_pending_rebills(worker)

    ticker: HourlyTicker | None = None
    if settings.scheduler_enabled:
        ticker = HourlyTicker(queue)
        await ticker.start()

    app.state.engine = engine
    app.state.job_queue = queue
    app.state.ticker = ticker
    logger.info("Billing engine %s started (env=%s)", __version__, settings.env.value)

    yield

    if ticker is not None:
        await ticker.stop()
    await queue.stop()
    await client.close()
    await engine.dispose()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: BillingSettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_settings()

    app = FastAPI(
        title="Billing Engine",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.env != PlatformEnv.PROD else None,
        redoc_url=None,
    )
    app.state.settings = settings

    app.include_router(health.router)
    app.include_router(webhooks.router)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app
