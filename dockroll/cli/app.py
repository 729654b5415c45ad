"""Main Typer application: imports and registers all CLI commands.

Entry point: ``dockroll`` (configured via pyproject.toml scripts).

Commands: resolve, publish, deploy, rollback, history, show.
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from dockroll.cli.commands.deploy import deploy_cmd, rollback_cmd
from dockroll.cli.commands.history import history_cmd, show_cmd
from dockroll.cli.commands.publish import publish_cmd, resolve_cmd
from dockroll.config import DeploySettings

app = typer.Typer(
    name="dockroll",
    help="dockroll: roll container images out to hosts, with rollback and an audit ledger.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def configure_logging(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Log at DEBUG regardless of DOCKROLL_LOG_LEVEL."
    ),
) -> None:
    """Install a Rich log handler at the configured level."""
    level = "DEBUG" if verbose else DeploySettings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


# Register subcommands
app.command(name="resolve", help="Validate a build output and print its image reference.")(resolve_cmd)
app.command(name="publish", help="Push an image to its registry (idempotent).")(publish_cmd)
app.command(name="deploy", help="Roll an image out to a host.")(deploy_cmd)
app.command(name="rollback", help="Redeploy the previous successful rollout.")(rollback_cmd)
app.command(name="history", help="List recorded rollouts.")(history_cmd)
app.command(name="show", help="Show one rollout's transitions and verify its chain.")(show_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
