"""Pluggable health probes run after the new container starts.

"Started" can mean "process launched" or "service accepting connections";
the orchestrator leaves that decision to an injected ``HealthProbe``:

1. **ContainerRunningProbe** — the container's main process is up
   (``docker inspect .State.Running``). Catches crash-on-boot.
2. **CommandProbe** — an arbitrary command on the target host exits 0,
   e.g. ``curl -fsS http://127.0.0.1:8080/health``.
3. No probe — success as soon as ``docker run`` exits 0.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

from dockroll.bridge import docker_commands
from dockroll.bridge.channel import CommandTimeout, Session
from dockroll.models.targets import DeploymentTarget

logger = logging.getLogger(__name__)


@runtime_checkable
class HealthProbe(Protocol):
    """Anything with ``check(session, target) -> bool``."""

    def check(self, session: Session, target: DeploymentTarget) -> bool:
        """Return ``True`` if the deployed instance is healthy right now."""
        ...


class ContainerRunningProbe:
    """Healthy while the container's main process is running."""

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self._timeout = timeout_seconds

    def check(self, session: Session, target: DeploymentTarget) -> bool:
        result = session.execute(
            docker_commands.inspect_running(target.container_name),
            timeout=self._timeout,
        )
        return result.ok and result.stdout.strip() == "true"


class CommandProbe:
    """Healthy when *command* exits 0 on the target host.

    Parameters
    ----------
    command:
        argv to execute remotely.
    timeout_seconds:
        Per-invocation timeout.
    """

    def __init__(self, command: Sequence[str], timeout_seconds: float = 10.0) -> None:
        if not command:
            raise ValueError("CommandProbe needs a command")
        self._command = list(command)
        self._timeout = timeout_seconds

    def check(self, session: Session, target: DeploymentTarget) -> bool:
        return session.execute(self._command, timeout=self._timeout).ok


def wait_until_healthy(
    probe: HealthProbe,
    session: Session,
    target: DeploymentTarget,
    *,
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll *probe* until it passes or *timeout* elapses.

    A probe command that times out counts as one failed poll.
    """
    deadline = clock() + timeout
    polls = 0
    while True:
        polls += 1
        try:
            if probe.check(session, target):
                logger.info(
                    "%s healthy after %d poll(s).", target.container_name, polls
                )
                return True
        except CommandTimeout:
            logger.warning("Health probe for %s timed out.", target.container_name)
        if clock() >= deadline:
            logger.error(
                "%s not healthy after %.1fs (%d polls).",
                target.container_name,
                timeout,
                polls,
            )
            return False
        sleep(interval)
