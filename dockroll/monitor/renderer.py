"""Rich terminal renderer for rollout history.

Turns ``RolloutRecord``s and their ledger entries into Rich renderables.

Color scheme
------------
- green     : RUNNING (success)
- red       : FAILED
- yellow    : in progress
- magenta   : rolled back to the previous image
- bold red  : service down
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from dockroll.models.ledger import LedgerEntry
from dockroll.models.rollout import RolloutRecord, RolloutState


_STATE_ICONS: dict[RolloutState, str] = {
    RolloutState.RUNNING: "[green]RUNNING[/green]",
    RolloutState.FAILED: "[bold red]FAILED[/bold red]",
}


def _state_display(record: RolloutRecord) -> str:
    display = _STATE_ICONS.get(record.state, f"[yellow]{record.state.value.upper()}[/yellow]")
    if record.service_down:
        display += " [bold red](service down)[/bold red]"
    elif record.rolled_back:
        display += " [magenta](rolled back)[/magenta]"
    return display


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "[dim]-[/dim]"


class HistoryRenderer:
    """Renders rollout history as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # History table
    # ------------------------------------------------------------------

    def render_history(self, records: list[RolloutRecord]) -> Table:
        """One row per rollout, newest first."""
        table = Table(
            title="Rollout History",
            show_header=True,
            header_style="bold cyan",
            expand=True,
        )
        table.add_column("Rollout", style="cyan", no_wrap=True)
        table.add_column("Target", min_width=20)
        table.add_column("Artifact", min_width=20)
        table.add_column("State", justify="center")
        table.add_column("Reason")
        table.add_column("Started", style="dim")

        for record in records:
            table.add_row(
                record.rollout_id,
                record.target_key,
                record.artifact_ref,
                _state_display(record),
                record.reason.value if record.reason else "[dim]-[/dim]",
                _fmt_time(record.started_at),
            )
        return table

    # ------------------------------------------------------------------
    # Single rollout
    # ------------------------------------------------------------------

    def render_rollout(
        self, record: RolloutRecord, entries: list[LedgerEntry], *, chain_valid: bool
    ) -> Panel:
        """Transitions of one rollout plus its summary line."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Transition", min_width=30)
        table.add_column("At", style="dim")
        table.add_column("Details")

        for i, entry in enumerate(entries):
            details = {k: v for k, v in entry.details.items() if k != "runtime"}
            detail_text = ", ".join(f"{k}={v}" for k, v in sorted(details.items()))
            table.add_row(
                str(i),
                entry.state_transition,
                entry.timestamp_utc.strftime("%H:%M:%S"),
                Text(detail_text) if detail_text else "[dim]-[/dim]",
            )

        summary_parts = [
            f"[bold]Target:[/bold] {record.target_key}",
            f"[bold]Artifact:[/bold] {record.artifact_ref}",
            f"[bold]State:[/bold] {_state_display(record)}",
        ]
        if record.pulled_digest:
            summary_parts.append(f"[bold]Digest:[/bold] {record.pulled_digest[:19]}...")
        if record.warnings:
            summary_parts.append(
                f"[yellow][bold]Warnings:[/bold] {len(record.warnings)}[/yellow]"
            )
        chain_status = "[green]valid[/green]" if chain_valid else "[bold red]BROKEN[/bold red]"
        summary_parts.append(f"[bold]Chain:[/bold] {chain_status}")

        return Panel(
            Group(table, Text(""), Text.from_markup("  |  ".join(summary_parts))),
            title=f"[bold]Rollout {record.rollout_id}[/bold]",
            subtitle=f"Started: {_fmt_time(record.started_at)} UTC",
            border_style="blue",
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_history(self, records: list[RolloutRecord]) -> None:
        if not records:
            self.console.print("[dim]No rollouts recorded.[/dim]")
            return
        self.console.print(self.render_history(records))

    def print_rollout(
        self, record: RolloutRecord, entries: list[LedgerEntry], *, chain_valid: bool
    ) -> None:
        self.console.print(self.render_rollout(record, entries, chain_valid=chain_valid))
        for warning in record.warnings:
            self.console.print(f"[yellow]warning:[/yellow] {escape(warning)}")

    def print_chain_verification(self, rollout_id: str, valid: bool) -> None:
        """Print a chain verification result."""
        if valid:
            self.console.print(
                f"[green]Hash chain for rollout {rollout_id} is valid.[/green]"
            )
        else:
            self.console.print(
                f"[bold red]Hash chain for rollout {rollout_id} is BROKEN![/bold red]"
            )
