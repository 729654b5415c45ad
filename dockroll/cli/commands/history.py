"""``dockroll history`` and ``dockroll show ROLLOUT_ID``: read the ledger.

Both are read-only projections over the rollout ledger. ``show`` also
verifies the rollout's hash chain and exits 1 if it is broken or if the
rollout has no terminal transition.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

from dockroll.config import DeploySettings
from dockroll.core.rollout_ledger import LedgerIntegrityError, RolloutLedger
from dockroll.monitor.renderer import HistoryRenderer

console = Console()


def _open_ledger(ledger_db: str | None) -> RolloutLedger:
    db_path = Path(ledger_db) if ledger_db else DeploySettings().ledger_path
    if not db_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        console.print("[dim]Run a rollout first with: dockroll deploy[/dim]")
        raise typer.Exit(code=1)
    return RolloutLedger(db_path)


def history_cmd(
    target: str = typer.Option(
        None,
        "--target",
        "-t",
        help="Only rollouts to this target (host/container_name).",
    ),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rollouts to list."),
    ledger_db: str = typer.Option(
        None,
        "--ledger",
        "-l",
        help="Path to the ledger SQLite database.",
    ),
) -> None:
    """List recorded rollouts, newest first."""
    ledger = _open_ledger(ledger_db)
    HistoryRenderer(console=console).print_history(
        ledger.get_records(target, limit=limit)
    )


def show_cmd(
    rollout_id: str = typer.Argument(..., help="The rollout ID to show."),
    ledger_db: str = typer.Option(
        None,
        "--ledger",
        "-l",
        help="Path to the ledger SQLite database.",
    ),
) -> None:
    """Show every transition of one rollout and verify its hash chain."""
    ledger = _open_ledger(ledger_db)
    renderer = HistoryRenderer(console=console)

    entries = ledger.get_rollout_entries(rollout_id)
    if not entries:
        console.print(f"[bold red]Rollout not found:[/bold red] {rollout_id}")
        recent = ledger.get_rollout_ids(limit=10)
        if recent:
            console.print("\n[bold]Recent rollouts:[/bold]")
            for rid in recent:
                console.print(f"  [cyan]{rid}[/cyan]")
        raise typer.Exit(code=1)

    try:
        chain_valid = ledger.verify_chain(rollout_id)
    except LedgerIntegrityError as exc:
        console.print(f"[bold red]Chain verification failed:[/bold red] {escape(str(exc))}")
        chain_valid = False

    record = ledger.get_record(rollout_id)
    renderer.print_rollout(record, entries, chain_valid=chain_valid)
    renderer.print_chain_verification(rollout_id, chain_valid)
    if not chain_valid:
        raise typer.Exit(code=1)

    # Each rollout chains only its own entries, so a removed tail still verifies.
    if record.status is None:
        console.print(
            "[bold yellow]No terminal transition recorded:[/bold yellow] "
            "the rollout is still in flight or its final entries were removed."
        )
        raise typer.Exit(code=1)
