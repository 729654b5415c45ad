"""``dockroll resolve`` and ``dockroll publish``: build output to registry.

``resolve`` validates a finished build (binary present, no secret build
arguments) and prints the image reference. ``publish`` pushes that
reference and prints it pinned to the digest the registry now serves.
Both print the reference plainly on the last line for scripting.
"""

from __future__ import annotations

import os
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from dockroll.bridge.registry import DockerCliRegistry
from dockroll.config import DeploySettings
from dockroll.core.publisher import ArtifactPublisher, PublishError
from dockroll.core.resolver import (
    BuildIncomplete,
    ImageReferenceResolver,
    SecretInBuildInput,
)
from dockroll.models.artifacts import ArtifactReference, BuildOutput, RegistryCredentials

console = Console()


def resolve_cmd(
    binary: Path = typer.Option(
        ...,
        "--binary",
        "-b",
        help="Path to the compiled artifact that goes into the image.",
    ),
    image: str = typer.Option(
        ...,
        "--image",
        "-i",
        help="Image reference the build produced, e.g. user/vpn-api:latest.",
    ),
    digest: str = typer.Option(
        None,
        "--digest",
        help="Digest the build reported for the image (sha256:...).",
    ),
    build_arg: list[str] = typer.Option(
        None,
        "--build-arg",
        help="Name of a build argument passed to the image build. Repeatable.",
    ),
) -> None:
    """Validate a build output and print its image reference."""
    settings = DeploySettings()
    resolver = ImageReferenceResolver(settings.secret_build_arg_patterns)
    try:
        reference = resolver.resolve(
            BuildOutput(
                binary_path=binary,
                image=image,
                image_digest=digest,
                build_args=list(build_arg or []),
            )
        )
    except (BuildIncomplete, SecretInBuildInput) as exc:
        console.print(f"[bold red]Build rejected:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1)
    except ValueError as exc:
        console.print(f"[bold red]Invalid image reference:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1)

    typer.echo(str(reference))


def publish_cmd(
    reference: str = typer.Argument(
        ...,
        help="Image to push, e.g. user/vpn-api:latest or user/vpn-api:latest@sha256:...",
    ),
    username: str = typer.Option(
        ...,
        "--username",
        "-u",
        help="Registry username.",
    ),
    password_env: str = typer.Option(
        "DOCKROLL_REGISTRY_PASSWORD",
        "--password-env",
        help="Environment variable holding the registry password or token.",
    ),
) -> None:
    """Push an image to its registry and print the digest-pinned reference."""
    settings = DeploySettings()

    password = os.environ.get(password_env)
    if not password:
        console.print(
            f"[bold red]Registry password not set:[/bold red] ${password_env} is empty."
        )
        raise typer.Exit(code=1)

    try:
        artifact = ArtifactReference.parse(reference)
    except ValueError as exc:
        console.print(f"[bold red]Invalid image reference:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1)

    publisher = ArtifactPublisher(
        DockerCliRegistry(),
        max_attempts=settings.publish_attempts,
        backoff_seconds=settings.retry_backoff_seconds,
    )
    try:
        published = publisher.publish(
            artifact, RegistryCredentials(username=username, password=password)
        )
    except PublishError as exc:
        console.print(
            f"[bold red]Publish failed ({type(exc).__name__}):[/bold red] {escape(str(exc))}"
        )
        raise typer.Exit(code=1)

    status = (
        "[bold green]Already present, push skipped.[/bold green]"
        if published.already_present
        else "[bold green]Published.[/bold green]"
    )
    console.print(
        Panel(
            "\n".join([
                status,
                "",
                f"[bold]Tag:[/bold]       {artifact.tagged_ref}",
                f"[bold]Digest:[/bold]    {published.digest}",
                f"[bold]Attempts:[/bold]  {published.attempts}",
            ]),
            title="[bold]dockroll publish[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
    typer.echo(published.reference.pull_ref)
