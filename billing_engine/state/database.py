"""Engines and sessions for the billing state store.

PostgreSQL (asyncpg) holds schedules, dunning records and dispatch claims in
production; SQLite (aiosqlite) stands in for local runs and tests.  Every
component opens its own short session through :func:`get_session`, so a
compare-and-set that loses a race is retried against fresh rows rather than
inside a long-lived transaction.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from billing_engine.config import BillingSettings

logger = logging.getLogger(__name__)

# One sessionmaker per engine, keyed by identity.
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    *,
    statement_timeout_ms: int = 30_000,
    lock_timeout_ms: int = 10_000,
) -> AsyncEngine:
    """Create the engine for *database_url*.

    A ``sqlite`` URL gets the single-connection local engine; its database
    path is taken from the URL, and an empty path means in-memory.  Any
    other URL is treated as PostgreSQL with a pre-pinged pool and
    server-side statement and lock timeouts, so a stuck claim or
    compare-and-set fails instead of holding a worker.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        from billing_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(url.database or ":memory:")

    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": str(statement_timeout_ms),
                "lock_timeout": str(lock_timeout_ms),
            }
        },
    )
    logger.info(
        "Connected billing state store %s (pool_size=%d max_overflow=%d)",
        url.render_as_string(hide_password=True),
        pool_size,
        max_overflow,
    )
    return engine


def engine_from_settings(settings: BillingSettings) -> AsyncEngine:
    return get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        statement_timeout_ms=settings.database_statement_timeout_ms,
        lock_timeout_ms=settings.database_lock_timeout_ms,
    )


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the cached session factory bound to *engine*.

    Sessions keep loaded attributes after commit, so a component can read a
    record in one session and act on it after that session has closed.
    """
    factory = _session_factories.get(id(engine))
    if factory is None or factory.kw.get("bind") is not engine:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[id(engine)] = factory
    return factory


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on clean exit, roll back and re-raise otherwise."""
    session = get_session_factory(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
