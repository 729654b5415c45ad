"""Remote execution channel — an ordered command session on a target host.

Bridge boundary
---------------
The orchestrator depends only on the ``RemoteChannel`` / ``Session``
protocols defined here. Two backends ship with dockroll:

1. **SshChannel**: OpenSSH client with a per-session ControlMaster socket,
   so every command of one rollout reuses a single authenticated
   connection. Key material passed as a secret is written to a 0600 file
   inside a private temp directory that is removed when the session ends.
2. **LocalChannel**: runs commands directly on this machine; useful when
   the pipeline runner *is* the Docker host, and for smoke tests.

Contract
--------
- ``connect(target)`` is a context manager; the session is released on
  every exit path, including command failure.
- Commands issued on one session execute in program order.
- A non-zero exit status is *returned* in ``ExecResult``. Whether it is
  fatal is the caller's decision.
- ``ConnectionFailed`` is raised when the host is unreachable or rejects
  authentication; ``CommandTimeout`` when a command outlives its timeout.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from dockroll.models.targets import DeploymentTarget

logger = logging.getLogger(__name__)

# OpenSSH reserves exit status 255 for its own (connection/auth) errors.
SSH_TRANSPORT_ERROR = 255

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


# ---------------------------------------------------------------------------
# Results and errors
# ---------------------------------------------------------------------------


class ExecResult(BaseModel):
    """Exit status and captured output of one remote command."""

    model_config = ConfigDict(frozen=True)

    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    def summary(self, limit: int = 200) -> str:
        """Short single-line description for logs and ledger details."""
        text = (self.stderr or self.stdout).strip().replace("\n", " ")
        if len(text) > limit:
            text = text[: limit - 3] + "..."
        return f"exit {self.exit_status}: {text}" if text else f"exit {self.exit_status}"


class ChannelError(RuntimeError):
    """Base class for transport-level failures."""


class ConnectionFailed(ChannelError):
    """Host unreachable or authentication rejected."""


class CommandTimeout(ChannelError):
    """A command did not finish within its timeout."""

    def __init__(self, command: Sequence[str], timeout: float | None) -> None:
        self.command = list(command)
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout}s: {shlex.join(command)}")


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Session(Protocol):
    """An open, ordered command session on one host."""

    def execute(
        self, command: Sequence[str], *, timeout: float | None = None
    ) -> ExecResult:
        """Run *command* (an argv list) and return its result."""
        ...


@runtime_checkable
class RemoteChannel(Protocol):
    """Factory for scoped sessions on deployment targets."""

    def connect(self, target: DeploymentTarget) -> AbstractContextManager[Session]:
        """Open a session on *target*; closing the context releases it."""
        ...


# ---------------------------------------------------------------------------
# Shared subprocess plumbing
# ---------------------------------------------------------------------------


def _run(
    runner: Runner, argv: Sequence[str], timeout: float | None, logged: Sequence[str]
) -> subprocess.CompletedProcess[str]:
    try:
        return runner(
            list(argv),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeout(logged, timeout) from exc


# ---------------------------------------------------------------------------
# SSH backend
# ---------------------------------------------------------------------------


class SshSession:
    """One ControlMaster-backed SSH connection. Created by ``SshChannel``."""

    def __init__(
        self,
        target: DeploymentTarget,
        base_args: list[str],
        runner: Runner,
        connect_timeout: int,
    ) -> None:
        self._target = target
        self._base_args = base_args
        self._runner = runner
        self._connect_timeout = connect_timeout
        self._lock = threading.Lock()
        self._open = False

    @property
    def target(self) -> DeploymentTarget:
        return self._target

    def open(self) -> None:
        """Establish the master connection, failing fast if the host is unusable."""
        argv = [
            *self._base_args,
            "-o", "ControlMaster=auto",
            "-o", "ControlPersist=yes",
            self._target.destination,
            "--",
            "true",
        ]
        try:
            proc = _run(self._runner, argv, self._connect_timeout * 2, ["ssh", "true"])
        except CommandTimeout as exc:
            raise ConnectionFailed(
                f"Timed out connecting to {self._target.destination}"
            ) from exc
        except OSError as exc:
            raise ConnectionFailed(f"Cannot run ssh client: {exc}") from exc
        if proc.returncode != 0:
            raise ConnectionFailed(
                f"Cannot connect to {self._target.destination}:{self._target.port}: "
                f"{proc.stderr.strip() or f'exit {proc.returncode}'}"
            )
        self._open = True
        logger.info(
            "SshSession: connected to %s:%d.", self._target.destination, self._target.port
        )

    def execute(
        self, command: Sequence[str], *, timeout: float | None = None
    ) -> ExecResult:
        if not self._open:
            raise ChannelError("Session is closed.")
        remote = shlex.join(command)
        argv = [*self._base_args, self._target.destination, "--", remote]
        with self._lock:
            logger.debug("SshSession.execute [%s]: %s", self._target.host, remote)
            try:
                proc = _run(self._runner, argv, timeout, command)
            except OSError as exc:
                raise ConnectionFailed(f"Cannot run ssh client: {exc}") from exc
        if proc.returncode == SSH_TRANSPORT_ERROR:
            raise ConnectionFailed(
                f"Connection to {self._target.destination} lost: {proc.stderr.strip()}"
            )
        return ExecResult(
            exit_status=proc.returncode, stdout=proc.stdout, stderr=proc.stderr
        )

    def close(self) -> None:
        """Tear down the master connection."""
        if not self._open:
            return
        self._open = False
        argv = [*self._base_args, "-O", "exit", self._target.destination]
        try:
            _run(self._runner, argv, self._connect_timeout, ["ssh", "-O", "exit"])
        except (ChannelError, OSError):
            logger.warning(
                "SshSession.close: could not stop control master for %s.",
                self._target.destination,
                exc_info=True,
            )
        logger.info("SshSession: closed (%s).", self._target.destination)


class SshChannel:
    """OpenSSH-backed ``RemoteChannel``.

    Parameters
    ----------
    connect_timeout:
        Seconds allowed for TCP connect + authentication.
    strict_host_key_checking:
        When ``False``, unknown host keys are accepted on first use
        (``accept-new``); changed keys are always rejected.
    known_hosts_path:
        Alternative known_hosts file.
    ssh_binary:
        Path or name of the ``ssh`` executable.
    runner:
        ``subprocess.run``-compatible callable (injectable for tests).
    """

    def __init__(
        self,
        *,
        connect_timeout: int = 10,
        strict_host_key_checking: bool = True,
        known_hosts_path: Path | None = None,
        ssh_binary: str = "ssh",
        runner: Runner = subprocess.run,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._strict = strict_host_key_checking
        self._known_hosts = known_hosts_path
        self._ssh = ssh_binary
        self._runner = runner

    @contextmanager
    def connect(self, target: DeploymentTarget) -> Iterator[SshSession]:
        with tempfile.TemporaryDirectory(prefix="dockroll-") as workdir:
            workdir_path = Path(workdir)
            control_path = workdir_path / "cm"
            base_args = self._base_args(target, workdir_path, control_path)
            session = SshSession(
                target, base_args, self._runner, self._connect_timeout
            )
            session.open()
            try:
                yield session
            finally:
                session.close()

    def _base_args(
        self, target: DeploymentTarget, workdir: Path, control_path: Path
    ) -> list[str]:
        args = [
            self._ssh,
            "-p", str(target.port),
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self._connect_timeout}",
            "-o", f"StrictHostKeyChecking={'yes' if self._strict else 'accept-new'}",
            "-o", f"ControlPath={control_path}",
        ]
        if self._known_hosts is not None:
            args += ["-o", f"UserKnownHostsFile={self._known_hosts}"]

        identity: Path | None = None
        if target.private_key is not None:
            identity = _write_private_key(workdir, target.private_key.get_secret_value())
        elif target.identity_file is not None:
            identity = target.identity_file
        if identity is not None:
            args += ["-i", str(identity), "-o", "IdentitiesOnly=yes"]
        return args


def _write_private_key(workdir: Path, key: str) -> Path:
    path = workdir / "id_deploy"
    if not key.endswith("\n"):
        # ssh rejects keys whose last line is unterminated
        key += "\n"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(key)
    return path


# ---------------------------------------------------------------------------
# Local backend
# ---------------------------------------------------------------------------


class LocalSession:
    """Runs commands on this machine."""

    def __init__(self, runner: Runner) -> None:
        self._runner = runner
        self._lock = threading.Lock()

    def execute(
        self, command: Sequence[str], *, timeout: float | None = None
    ) -> ExecResult:
        with self._lock:
            logger.debug("LocalSession.execute: %s", shlex.join(command))
            try:
                proc = _run(self._runner, command, timeout, command)
            except FileNotFoundError as exc:
                return ExecResult(exit_status=127, stderr=str(exc))
        return ExecResult(
            exit_status=proc.returncode, stdout=proc.stdout, stderr=proc.stderr
        )


class LocalChannel:
    """``RemoteChannel`` for the machine dockroll runs on; ignores host credentials."""

    def __init__(self, runner: Runner = subprocess.run) -> None:
        self._runner = runner

    @contextmanager
    def connect(self, target: DeploymentTarget) -> Iterator[LocalSession]:
        logger.info("LocalChannel: deploying %s on the local host.", target.container_name)
        yield LocalSession(self._runner)

    def __repr__(self) -> str:
        return "LocalChannel()"
