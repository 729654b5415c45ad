"""``dockroll deploy`` and ``dockroll rollback``: converge a host.

Exit codes
----------
0  the target runs the requested image
1  the rollout failed; the previous instance is still (or again) running
   or there was none
2  the rollout failed and left no instance running
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from dockroll.bridge.channel import LocalChannel, RemoteChannel, SshChannel
from dockroll.config import DeploySettings
from dockroll.core.health import CommandProbe, ContainerRunningProbe, HealthProbe
from dockroll.core.orchestrator import NoRollbackCandidate, RolloutOrchestrator
from dockroll.core.production_guard import ProductionConfigError
from dockroll.models.artifacts import ArtifactReference
from dockroll.models.rollout import RolloutOutcome
from dockroll.models.targets import DeploymentTarget, RuntimeConfiguration

console = Console()


# ---------------------------------------------------------------------------
# Shared option helpers
# ---------------------------------------------------------------------------


def _fail(message: str) -> typer.Exit:
    console.print(f"[bold red]{escape(message)}[/bold red]")
    return typer.Exit(code=1)


def _build_target(
    host: str,
    user: str,
    container: str,
    port: int,
    key_file: Path | None,
    key_env: str | None,
) -> DeploymentTarget:
    if key_file is not None and key_env is not None:
        raise _fail("Use either --key-file or --key-env, not both.")
    private_key = None
    if key_env is not None:
        private_key = os.environ.get(key_env)
        if not private_key:
            raise _fail(f"Deploy key not set: ${key_env} is empty.")
    try:
        return DeploymentTarget(
            host=host,
            username=user,
            container_name=container,
            port=port,
            private_key=private_key,
            identity_file=key_file,
        )
    except ValueError as exc:
        raise _fail(f"Invalid target: {exc}") from exc


def _load_runtime(path: Path | None) -> RuntimeConfiguration:
    if path is None:
        return RuntimeConfiguration()
    if not path.is_file():
        raise _fail(f"Runtime configuration not found: {path}")
    try:
        return RuntimeConfiguration.from_toml(path)
    except ValueError as exc:
        raise _fail(f"Invalid runtime configuration {path}: {exc}") from exc


def _build_channel(settings: DeploySettings, local: bool) -> RemoteChannel:
    if local:
        return LocalChannel()
    return SshChannel(
        connect_timeout=settings.connect_timeout_seconds,
        strict_host_key_checking=settings.strict_host_key_checking,
        known_hosts_path=settings.known_hosts_path,
    )


def _build_probe(
    settings: DeploySettings, health_cmd: str | None, check_running: bool
) -> HealthProbe | None:
    if health_cmd:
        return CommandProbe(shlex.split(health_cmd))
    if check_running:
        return ContainerRunningProbe(settings.command_timeout_seconds)
    return None


def _build_orchestrator(
    settings: DeploySettings, local: bool, probe: HealthProbe | None
) -> RolloutOrchestrator:
    try:
        return RolloutOrchestrator(
            _build_channel(settings, local), settings=settings, health_probe=probe
        )
    except ProductionConfigError as exc:
        raise _fail(str(exc)) from exc


def _settings(ledger_db: str | None, rollback: bool) -> DeploySettings:
    settings = DeploySettings()
    update: dict = {"rollback_on_failure": settings.rollback_on_failure and rollback}
    if ledger_db:
        update["ledger_path"] = Path(ledger_db)
    return settings.model_copy(update=update)


def _report(outcome: RolloutOutcome, target: DeploymentTarget, artifact: str) -> None:
    if outcome.succeeded:
        headline = f"[bold green]{target.container_name} is running {artifact}[/bold green]"
        border = "green"
    elif outcome.service_down:
        headline = (
            f"[bold red]Rollout failed and NO instance of {target.container_name} "
            f"is running on {target.host}[/bold red]"
        )
        border = "red"
    elif outcome.rolled_back:
        headline = (
            f"[bold yellow]Rollout failed; previous image "
            f"{outcome.previous_image} restored[/bold yellow]"
        )
        border = "yellow"
    else:
        headline = "[bold red]Rollout failed[/bold red]"
        border = "red"

    lines = [
        headline,
        "",
        f"[bold]Rollout:[/bold]  {outcome.rollout_id}",
        f"[bold]Target:[/bold]   {target.lease_key}",
        f"[bold]State:[/bold]    {outcome.final_state.value}",
    ]
    if outcome.reason is not None:
        lines.append(f"[bold]Reason:[/bold]   {outcome.reason.value}")
    if outcome.message:
        lines.append(f"[bold]Detail:[/bold]   {escape(outcome.message)}")
    console.print(
        Panel(
            "\n".join(lines),
            title="[bold]dockroll[/bold]",
            border_style=border,
            padding=(1, 2),
        )
    )
    for warning in outcome.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(warning)}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def deploy_cmd(
    reference: str = typer.Argument(
        ...,
        help="Image to deploy, e.g. user/vpn-api:latest.",
    ),
    host: str = typer.Option(..., "--host", "-H", help="Target host."),
    user: str = typer.Option(..., "--user", "-u", help="SSH user on the target host."),
    container: str = typer.Option(
        ..., "--container", "-c", help="Container name (identity of the instance)."
    ),
    port: int = typer.Option(22, "--port", "-p", help="SSH port."),
    key_file: Path = typer.Option(None, "--key-file", help="SSH private key file."),
    key_env: str = typer.Option(
        None, "--key-env", help="Environment variable holding the SSH private key."
    ),
    runtime: Path = typer.Option(
        None, "--runtime", "-r", help="TOML file with the runtime configuration."
    ),
    rollback: bool = typer.Option(
        True,
        "--rollback/--no-rollback",
        help="Restore the previous image if the new container fails to start.",
    ),
    supersede: bool = typer.Option(
        False,
        "--supersede",
        help="Cancel in-flight rollouts to the same container that have not started replacing it.",
    ),
    health_cmd: str = typer.Option(
        None,
        "--health-cmd",
        help="Command run on the host after start; must exit 0 for success.",
    ),
    check_running: bool = typer.Option(
        False,
        "--check-running",
        help="After start, wait until the container reports State.Running.",
    ),
    local: bool = typer.Option(
        False, "--local", help="Run docker on this machine instead of over SSH."
    ),
    ledger_db: str = typer.Option(
        None, "--ledger", "-l", help="Path to the ledger SQLite database."
    ),
) -> None:
    """Pull the image on the host, replace the running container, and verify it."""
    try:
        artifact = ArtifactReference.parse(reference)
    except ValueError as exc:
        raise _fail(f"Invalid image reference: {exc}") from exc

    target = _build_target(host, user, container, port, key_file, key_env)
    config = _load_runtime(runtime)
    settings = _settings(ledger_db, rollback)
    orchestrator = _build_orchestrator(
        settings, local, _build_probe(settings, health_cmd, check_running)
    )

    outcome = orchestrator.deploy(artifact, target, config, supersede=supersede)
    _report(outcome, target, str(artifact))
    raise typer.Exit(code=outcome.exit_code)


def rollback_cmd(
    host: str = typer.Option(..., "--host", "-H", help="Target host."),
    user: str = typer.Option(..., "--user", "-u", help="SSH user on the target host."),
    container: str = typer.Option(
        ..., "--container", "-c", help="Container name (identity of the instance)."
    ),
    port: int = typer.Option(22, "--port", "-p", help="SSH port."),
    key_file: Path = typer.Option(None, "--key-file", help="SSH private key file."),
    key_env: str = typer.Option(
        None, "--key-env", help="Environment variable holding the SSH private key."
    ),
    runtime: Path = typer.Option(
        None, "--runtime", "-r", help="TOML file with the runtime configuration."
    ),
    local: bool = typer.Option(
        False, "--local", help="Run docker on this machine instead of over SSH."
    ),
    ledger_db: str = typer.Option(
        None, "--ledger", "-l", help="Path to the ledger SQLite database."
    ),
) -> None:
    """Redeploy the artifact of the successful rollout before the latest one."""
    target = _build_target(host, user, container, port, key_file, key_env)
    config = _load_runtime(runtime)
    settings = _settings(ledger_db, rollback=True)
    orchestrator = _build_orchestrator(settings, local, None)

    try:
        outcome = orchestrator.rollback(target, config)
    except NoRollbackCandidate as exc:
        raise _fail(f"Nothing to roll back to: {exc}") from exc
    record = orchestrator.ledger.get_record(outcome.rollout_id)
    _report(outcome, target, record.artifact_ref if record else "previous image")
    raise typer.Exit(code=outcome.exit_code)
