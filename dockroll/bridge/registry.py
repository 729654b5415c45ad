"""Registry bridge — push images and query remote digests.

``RegistryClient`` is the protocol the publisher depends on.
``DockerCliRegistry`` implements it with the local ``docker`` CLI and maps
its stderr onto the publish error taxonomy:

- ``AuthenticationFailed``: bad credentials or access denied (fatal)
- ``QuotaExceeded``: rate limit / storage quota (fatal)
- ``NetworkError``: transient transport problem (retryable)
- ``PublishError``: anything else (fatal)
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from dockroll.models.artifacts import (
    DEFAULT_REGISTRY,
    ArtifactReference,
    RegistryCredentials,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PublishError(RuntimeError):
    """Base class for registry publish failures. Not retried."""


class AuthenticationFailed(PublishError):
    """The registry rejected the credentials."""


class QuotaExceeded(PublishError):
    """The registry refused the push for rate or storage limits."""


class NetworkError(PublishError):
    """Transient failure talking to the registry. Safe to retry."""


class DigestMismatch(PublishError):
    """The registry holds different content than the reference pins."""


_AUTH_MARKERS = (
    "unauthorized",
    "authentication required",
    "incorrect username or password",
    "denied",
)
_QUOTA_MARKERS = ("toomanyrequests", "too many requests", "quota", "rate limit")
_NETWORK_MARKERS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "no such host",
    "tls handshake",
    "temporary failure",
    "service unavailable",
    "bad gateway",
    "unexpected eof",
)
_NOT_FOUND_MARKERS = ("not found", "manifest unknown", "no such manifest")

_PUSH_DIGEST_RE = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")
_DIGEST_RE = re.compile(r"(sha256:[0-9a-f]{64})")


def classify_registry_error(message: str) -> PublishError:
    """Map registry/CLI error text onto the publish error taxonomy."""
    lowered = message.lower()
    if any(m in lowered for m in _AUTH_MARKERS):
        return AuthenticationFailed(message)
    if any(m in lowered for m in _QUOTA_MARKERS):
        return QuotaExceeded(message)
    if any(m in lowered for m in _NETWORK_MARKERS):
        return NetworkError(message)
    return PublishError(message)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class RegistryClient(Protocol):
    """Minimal registry surface used by ``ArtifactPublisher``."""

    def remote_digest(
        self, reference: ArtifactReference, credentials: RegistryCredentials
    ) -> str | None:
        """Digest currently behind ``reference.tagged_ref``, or ``None``."""
        ...

    def push(
        self, reference: ArtifactReference, credentials: RegistryCredentials
    ) -> str:
        """Push the local image to ``reference.tagged_ref``; return its digest."""
        ...


# ---------------------------------------------------------------------------
# Docker CLI implementation
# ---------------------------------------------------------------------------


class DockerCliRegistry:
    """``RegistryClient`` backed by the ``docker`` CLI on this machine.

    Parameters
    ----------
    docker_binary:
        Name or path of the docker executable.
    timeout_seconds:
        Upper bound for each CLI invocation; expiry is a ``NetworkError``.
    runner:
        ``subprocess.run``-compatible callable (injectable for tests).
    """

    def __init__(
        self,
        *,
        docker_binary: str = "docker",
        timeout_seconds: float = 600.0,
        runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
    ) -> None:
        self._docker = docker_binary
        self._timeout = timeout_seconds
        self._runner = runner
        self._logged_in: set[tuple[str, str]] = set()

    def remote_digest(
        self, reference: ArtifactReference, credentials: RegistryCredentials
    ) -> str | None:
        self._login(reference.registry, credentials)
        proc = self._invoke(
            [
                self._docker, "buildx", "imagetools", "inspect",
                reference.tagged_ref,
                "--format", "{{.Manifest.Digest}}",
            ]
        )
        if proc.returncode != 0:
            if any(m in proc.stderr.lower() for m in _NOT_FOUND_MARKERS):
                return None
            raise classify_registry_error(proc.stderr.strip())
        match = _DIGEST_RE.search(proc.stdout)
        return match.group(1) if match else None

    def push(
        self, reference: ArtifactReference, credentials: RegistryCredentials
    ) -> str:
        self._login(reference.registry, credentials)
        proc = self._invoke([self._docker, "push", reference.tagged_ref])
        if proc.returncode != 0:
            raise classify_registry_error(proc.stderr.strip())
        match = _PUSH_DIGEST_RE.search(proc.stdout)
        if match is None:
            raise PublishError(
                f"docker push for {reference.tagged_ref} reported no digest"
            )
        return match.group(1)

    def _login(self, registry: str, credentials: RegistryCredentials) -> None:
        key = (registry, credentials.username)
        if key in self._logged_in:
            return
        argv = [self._docker, "login", "--username", credentials.username, "--password-stdin"]
        if registry != DEFAULT_REGISTRY:
            argv.append(registry)
        proc = self._invoke(argv, stdin=credentials.password.get_secret_value())
        if proc.returncode != 0:
            error = classify_registry_error(proc.stderr.strip())
            if type(error) is PublishError:
                error = AuthenticationFailed(proc.stderr.strip())
            raise error
        self._logged_in.add(key)
        logger.info("DockerCliRegistry: logged in to %s as %s.", registry, credentials.username)

    def _invoke(
        self, argv: list[str], *, stdin: str | None = None
    ) -> subprocess.CompletedProcess[str]:
        logger.debug("DockerCliRegistry: %s", " ".join(argv[:3]))
        try:
            return self._runner(
                argv,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise NetworkError(f"{argv[1]} timed out after {self._timeout}s") from exc
        except OSError as exc:
            raise PublishError(f"Cannot run {self._docker}: {exc}") from exc
