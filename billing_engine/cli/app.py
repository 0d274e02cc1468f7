"""Billing engine CLI -- Typer-based operator interface.

Provides commands for managing tenant billing schedules, previewing and
running hourly evaluation ticks, inspecting open dunning records, and
serving the HTTP API.  Human-readable output goes to *stderr* via Rich;
``--json`` switches to machine-readable JSON on *stdout*.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncEngine

from billing_engine.charging.client import UpstreamBillingClient
from billing_engine.cli.display import (
    display_due,
    display_dunning,
    display_rejected,
    display_schedules,
    display_tick_result,
)
from billing_engine.config import BillingSettings, load_settings
from billing_engine.jobs.queue import InlineJobQueue
from billing_engine.jobs.worker import BillingWorker
from billing_engine.log_format import configure_logging
from billing_engine.models.dunning import DunningState
from billing_engine.models.schedule import BillingSchedule, ChargeWindow
from billing_engine.retry import RetryConfig
from billing_engine.scheduling.calculator import charge_window, is_due, snap_to_hour
from billing_engine.scheduling.evaluator import iter_pages
from billing_engine.state.database import engine_from_settings, get_session
from billing_engine.state.repository import BillingScheduleRepository, DunningRepository
from billing_engine.state.sqlite_adapter import create_local_tables

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="billing-engine",
    help="Billing Engine - hourly subscription charging and dunning",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_verbose: bool = False


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log engine activity to stderr.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _verbose  # noqa: PLW0603
    _json_output = json_mode
    _verbose = verbose


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> BillingSettings:
    try:
        settings = load_settings()
    except ValidationError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=3) from exc
    if _verbose:
        configure_logging(structured=settings.structured_logging)
    return settings


def _run_with_engine(settings: BillingSettings, fn: Callable[[AsyncEngine], Awaitable[T]]) -> T:
    """Run *fn* against a fresh engine, disposing it afterwards."""

    async def _main() -> T:
        engine = engine_from_settings(settings)
        try:
            return await fn(engine)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


def _parse_instant(value: str | None) -> datetime:
    """Parse an ISO-8601 instant; ``None`` means now.  Naive input is rejected."""
    if value is None:
        return datetime.now(UTC)
    try:
        instant = datetime.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid instant '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc
    if instant.tzinfo is None:
        console.print(f"[red]Instant '{value}' has no UTC offset; add one, e.g. '{value}+00:00'.[/red]")
        raise typer.Exit(code=3)
    return instant


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the state store tables (idempotent)."""
    settings = _settings()
    _run_with_engine(settings, create_local_tables)
    console.print("[green]State store tables are in place.[/green]")


@app.command("schedule-set")
def schedule_set(
    tenant: str = typer.Argument(..., help="Tenant identifier."),
    hour: int | None = typer.Option(None, "--hour", help="Local billing hour (0-23)."),
    timezone: str | None = typer.Option(None, "--timezone", "--tz", help="IANA timezone name."),
) -> None:
    """Create or update a tenant's billing schedule and activate it."""
    settings = _settings()
    try:
        schedule = BillingSchedule(
            tenant_id=tenant,
            hour=hour if hour is not None else settings.default_billing_hour,
            timezone=timezone or settings.default_timezone,
        )
    except ValidationError as exc:
        console.print(f"[red]Invalid schedule for {tenant}:[/red]")
        for err in exc.errors():
            console.print(f"  {'.'.join(str(p) for p in err['loc'])}: {err['msg']}")
        raise typer.Exit(code=3) from exc

    async def _save(engine: AsyncEngine) -> None:
        async with get_session(engine) as session:
            await BillingScheduleRepository(session).upsert(schedule.tenant_id, schedule.hour, schedule.timezone)

    _run_with_engine(settings, _save)

    if _json_output:
        _emit_json(schedule.model_dump())
    else:
        console.print(
            f"[green]{schedule.tenant_id}[/green] bills daily at {schedule.hour:02d}:00 {schedule.timezone}"
        )


@app.command("schedule-deactivate")
def schedule_deactivate(
    tenant: str = typer.Argument(..., help="Tenant identifier."),
) -> None:
    """Stop evaluating a tenant's schedule.  Schedules are never deleted."""
    settings = _settings()

    async def _deactivate(engine: AsyncEngine) -> bool:
        async with get_session(engine) as session:
            return await BillingScheduleRepository(session).deactivate(tenant)

    if not _run_with_engine(settings, _deactivate):
        console.print(f"[red]No billing schedule for tenant '{tenant}'.[/red]")
        raise typer.Exit(code=1)
    console.print(f"[yellow]{tenant}[/yellow] deactivated")


@app.command("schedules")
def schedules(
    include_inactive: bool = typer.Option(True, "--all/--active-only", help="Include inactive schedules."),
) -> None:
    """List billing schedules."""
    settings = _settings()

    async def _list(engine: AsyncEngine) -> list[Any]:
        async with get_session(engine) as session:
            return await BillingScheduleRepository(session).list_all(include_inactive=include_inactive)

    rows = _run_with_engine(settings, _list)
    if _json_output:
        _emit_json(
            [{"tenant_id": r.tenant_id, "hour": r.hour, "timezone": r.timezone, "active": r.active} for r in rows]
        )
    else:
        display_schedules(console, rows)


@app.command("due")
def due(
    at: str | None = typer.Option(None, "--at", help="Instant to evaluate (ISO-8601 with offset); default now."),
) -> None:
    """Preview which tenants are due at a tick, without dispatching anything."""
    settings = _settings()
    tick = snap_to_hour(_parse_instant(at))

    async def _preview(engine: AsyncEngine) -> list[tuple[str, ChargeWindow]]:
        found: list[tuple[str, ChargeWindow]] = []
        async with get_session(engine) as session:
            repo = BillingScheduleRepository(session)
            total = await repo.count_active()
            for page in iter_pages(total, settings.schedule_batch_size):
                for row in await repo.list_active_page(page.offset, page.limit):
                    try:
                        schedule = BillingSchedule.model_validate(row)
                    except ValidationError:
                        console.print(f"[yellow]Skipping invalid schedule for {row.tenant_id}[/yellow]")
                        continue
                    if is_due(schedule, tick):
                        found.append((schedule.tenant_id, charge_window(schedule, tick)))
        return found

    found = _run_with_engine(settings, _preview)
    if _json_output:
        _emit_json(
            {
                "tick": tick.isoformat(),
                "due": [
                    {"tenant_id": t, "start": w.start.isoformat(), "end": w.end.isoformat()} for t, w in found
                ],
            }
        )
    else:
        display_due(console, tick, found)


@app.command("tick")
def tick(
    at: str | None = typer.Option(None, "--at", help="Instant to evaluate (ISO-8601 with offset); default now."),
) -> None:
    """Run one evaluation tick inline: send due bulk charges and owed rebills."""
    settings = _settings()
    instant = _parse_instant(at)

    async def _tick(engine: AsyncEngine) -> Any:
        client = UpstreamBillingClient.from_settings(settings)
        queue = InlineJobQueue(retry_config=RetryConfig.from_settings(settings))
        worker = BillingWorker(engine, queue, client, settings)
        queue.bind(worker.handle)
        try:
            return await worker.run_tick(instant)
        finally:
            await client.close()

    result = _run_with_engine(settings, _tick)
    if _json_output:
        _emit_json(
            {
                "tick": result.tick.isoformat(),
                "evaluated": result.evaluated,
                "due": result.due,
                "invalid": result.invalid,
                "failed_pages": [{"offset": p.offset, "limit": p.limit} for p in result.failed_pages],
                "failed_dispatch": result.failed_dispatch,
                "not_accepted": result.not_accepted,
                "rebills_requeued": result.rebills_requeued,
                "failed_rebills": result.failed_rebills,
            }
        )
    else:
        display_tick_result(console, result)

    if not result.ok or result.not_accepted:
        raise typer.Exit(code=1)


@app.command("dunning")
def dunning(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant identifier."),
    limit: int = typer.Option(100, "--limit", help="Maximum records to show."),
    rejected: bool = typer.Option(False, "--rejected", help="Show records whose rebill the upstream refused."),
) -> None:
    """List a tenant's open dunning records, or with --rejected the ones needing an operator."""
    settings = _settings()

    async def _load(engine: AsyncEngine) -> list[DunningState]:
        async with get_session(engine) as session:
            repo = DunningRepository(session, tenant)
            rows = await (repo.list_rejected(limit=limit) if rejected else repo.list_open(limit=limit))
            return [DunningState.model_validate(r) for r in rows]

    states = _run_with_engine(settings, _load)
    if _json_output:
        _emit_json([s.model_dump(mode="json") for s in states])
    elif rejected:
        display_rejected(console, states)
    else:
        display_dunning(console, states)


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind the API server to."),
    port: int = typer.Option(8000, "--port", "-p", help="API server port."),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload on code changes."),
) -> None:
    """Serve the webhook API with in-process workers and the hourly ticker."""
    import uvicorn

    console.print(f"[bold]Billing engine[/bold] listening on http://{host}:{port}")
    uvicorn.run(
        "billing_engine.api.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )
