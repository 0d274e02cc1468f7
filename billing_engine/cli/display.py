"""Rich output formatting for the billing engine CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from billing_engine.models.dunning import DunningState, DunningTier
from billing_engine.models.schedule import ChargeWindow
from billing_engine.scheduling.evaluator import TickResult

_TIER_COLOURS: dict[str, str] = {
    DunningTier.RETRY.value: "yellow",
    DunningTier.PENULTIMATE.value: "dark_orange",
    DunningTier.FINAL.value: "red",
}


def _coloured_tier(tier: str) -> str:
    colour = _TIER_COLOURS.get(tier, "white")
    return f"[{colour}]{tier}[/{colour}]"


def _fmt(instant: datetime | None) -> str:
    return instant.strftime("%Y-%m-%d %H:%M:%S %Z") if instant is not None else "-"


def display_schedules(console: Console, rows: Sequence[Any]) -> None:
    """Render billing schedules as a table."""
    if not rows:
        console.print("[dim]No billing schedules.[/dim]")
        return

    table = Table(title="Billing Schedules")
    table.add_column("Tenant", style="cyan")
    table.add_column("Hour", justify="right")
    table.add_column("Timezone")
    table.add_column("Active")
    table.add_column("Updated", style="dim")

    for row in rows:
        table.add_row(
            row.tenant_id,
            f"{row.hour:02d}:00",
            row.timezone,
            "[green]yes[/green]" if row.active else "[dim]no[/dim]",
            _fmt(row.updated_at),
        )
    console.print(table)


def display_due(console: Console, tick: datetime, due: Sequence[tuple[str, ChargeWindow]]) -> None:
    """Render the tenants due at *tick* and the window each would charge."""
    if not due:
        console.print(f"[dim]No tenants due at {_fmt(tick)}.[/dim]")
        return

    table = Table(title=f"Due at {_fmt(tick)}")
    table.add_column("Tenant", style="cyan")
    table.add_column("Window start")
    table.add_column("Window end")

    for tenant_id, window in due:
        table.add_row(tenant_id, _fmt(window.start), _fmt(window.end))
    console.print(table)


def display_tick_result(console: Console, result: TickResult) -> None:
    """Render the outcome of one evaluation tick."""
    lines = [
        f"[bold]Tick:[/bold] {_fmt(result.tick)}",
        f"[bold]Evaluated:[/bold] {result.evaluated}",
        f"[bold]Due:[/bold] {len(result.due)}" + (f" ({', '.join(result.due)})" if result.due else ""),
    ]
    if result.invalid:
        lines.append(f"[yellow]Invalid schedules:[/yellow] {', '.join(result.invalid)}")
    if result.failed_pages:
        pages = ", ".join(f"{p.offset}+{p.limit}" for p in result.failed_pages)
        lines.append(f"[red]Failed pages:[/red] {pages}")
    if result.failed_dispatch:
        lines.append(f"[red]Failed dispatch:[/red] {', '.join(result.failed_dispatch)}")
    if result.not_accepted:
        lines.append(f"[red]Not accepted:[/red] {', '.join(result.not_accepted)}")
    if result.rebills_requeued:
        lines.append(f"[bold]Rebills re-enqueued:[/bold] {len(result.rebills_requeued)}")
    if result.failed_rebills:
        lines.append(f"[red]Failed rebills:[/red] {', '.join(result.failed_rebills)}")

    border = "green" if result.ok and not result.not_accepted else "red"
    console.print(Panel("\n".join(lines), title="Schedule Evaluation", border_style=border))


def display_dunning(console: Console, states: Sequence[DunningState]) -> None:
    """Render open dunning records."""
    if not states:
        console.print("[dim]No open dunning records.[/dim]")
        return

    table = Table(title="Open Dunning Records")
    table.add_column("Contract", style="cyan")
    table.add_column("Cycle", justify="right")
    table.add_column("Reason")
    table.add_column("Tier")
    table.add_column("Attempts", justify="right")
    table.add_column("Next attempt")

    for state in states:
        table.add_row(
            state.contract_id,
            str(state.billing_cycle_index),
            state.failure_reason,
            _coloured_tier(state.tier.value),
            str(state.attempt_count),
            _fmt(state.next_attempt_at) if state.next_attempt_at is not None else "[dim]sent, awaiting outcome[/dim]",
        )
    console.print(table)


def display_rejected(console: Console, states: Sequence[DunningState]) -> None:
    """Render dunning records closed because the upstream refused their rebill."""
    if not states:
        console.print("[dim]No rejected rebills.[/dim]")
        return

    table = Table(title="Rejected Rebills")
    table.add_column("Contract", style="cyan")
    table.add_column("Cycle", justify="right")
    table.add_column("Reason")
    table.add_column("Attempts", justify="right")
    table.add_column("Rejected at")

    for state in states:
        table.add_row(
            state.contract_id,
            str(state.billing_cycle_index),
            state.failure_reason,
            str(state.attempt_count),
            f"[red]{_fmt(state.completed_at)}[/red]",
        )
    console.print(table)
