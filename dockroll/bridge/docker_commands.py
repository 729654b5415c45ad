"""Docker CLI argv builders for every step of a rollout.

Pure functions; nothing here executes anything. ``RuntimeConfiguration``
values are rendered verbatim, in the same flag order the deploy script
has always used.
"""

from __future__ import annotations

from dockroll.models.artifacts import ArtifactReference
from dockroll.models.targets import RuntimeConfiguration

DOCKER = "docker"


def pull(reference: ArtifactReference) -> list[str]:
    return [DOCKER, "pull", reference.pull_ref]


def stop(container_name: str) -> list[str]:
    return [DOCKER, "stop", container_name]


def remove(container_name: str, *, force: bool = False) -> list[str]:
    argv = [DOCKER, "rm"]
    if force:
        argv.append("-f")
    argv.append(container_name)
    return argv


def inspect_image_id(container_name: str) -> list[str]:
    """Image ID (``sha256:...``) the named container was created from."""
    return [DOCKER, "inspect", "--format", "{{.Image}}", container_name]


def inspect_running(container_name: str) -> list[str]:
    """Prints ``true`` while the container's main process is running."""
    return [DOCKER, "inspect", "--format", "{{.State.Running}}", container_name]


def run(container_name: str, image: str, config: RuntimeConfiguration) -> list[str]:
    """Detached ``docker run`` applying the runtime configuration.

    Parameters
    ----------
    container_name:
        Identity of the instance on the host.
    image:
        Anything ``docker run`` accepts: a reference or an image ID.
    config:
        Passed through unmodified.
    """
    argv = [DOCKER, "run", "-d", "--name", container_name]
    for hostname, address in config.extra_hosts.items():
        argv += ["--add-host", f"{hostname}:{address}"]
    if config.network:
        argv += ["--network", config.network]
    if config.network_alias:
        argv += ["--network-alias", config.network_alias]
    argv += ["--restart", config.restart_policy]
    if config.env_file:
        argv += ["--env-file", config.env_file]
    for mapping in config.published_ports:
        argv += ["-p", mapping]
    argv.append(image)
    return argv
