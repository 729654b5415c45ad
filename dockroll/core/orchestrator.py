"""Rollout orchestrator — converges a host to one running instance of an image.

The orchestrator wires together the RemoteChannel, RolloutMachine,
RolloutLedger, LeaseManager and an optional HealthProbe, and drives one
rollout through:

    PENDING -> PULLING -> STOPPING_PREVIOUS -> REMOVING_PREVIOUS
            -> STARTING_NEW [-> VERIFYING] -> RUNNING

Failure policy
--------------
- PULLING and connection failures before it: no host mutation yet, so the
  whole connect+pull step is retried (``pull_attempts``) and then fails.
- STOPPING_PREVIOUS / REMOVING_PREVIOUS: failures are tolerated (the
  previous instance may simply not exist) and surface as warnings.
- STARTING_NEW / VERIFYING: fatal. The host has no instance at this point,
  so the previous image (captured before removal) is started again when
  ``rollback_on_failure`` is set; otherwise the outcome is marked
  ``service_down``.

A rollout can be cancelled only before STOPPING_PREVIOUS begins. The lease
holder can also be cancelled through the lease store, which reaches
rollouts of other processes when the store is shared (SQLite leases).
"""

from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from dockroll.bridge import docker_commands
from dockroll.bridge.channel import (
    CommandTimeout,
    ConnectionFailed,
    ExecResult,
    RemoteChannel,
    Session,
)
from dockroll.config import DeploySettings
from dockroll.core.health import HealthProbe, wait_until_healthy
from dockroll.core.lease import (
    InProcessLeaseManager,
    LeaseManager,
    LeaseUnavailable,
    SqliteLeaseManager,
)
from dockroll.core.production_guard import enforce_production_constraints
from dockroll.core.rollout_ledger import RolloutLedger
from dockroll.core.rollout_machine import RolloutMachine
from dockroll.models.artifacts import ArtifactReference
from dockroll.models.rollout import (
    CANCELLABLE_STATES,
    FailureReason,
    RolloutOutcome,
    RolloutState,
    RolloutStatus,
)
from dockroll.models.targets import DeploymentTarget, RuntimeConfiguration

logger = logging.getLogger(__name__)

_PULL_DIGEST_RE = re.compile(r"Digest:\s*(sha256:[0-9a-f]{64})")


class NoRollbackCandidate(RuntimeError):
    """Raised when the ledger has no earlier successful rollout to return to."""


class CancellationToken:
    """Cancellation handle for one rollout.

    ``cancel()`` wins only until the orchestrator commits to mutating the
    host; after ``commit()`` it is refused.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._committed = False

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the rollout is past the point of no return."""
        with self._lock:
            if self._committed:
                return False
            self._cancelled = True
            return True

    def commit(self) -> bool:
        """Mark the point of no return. Returns False if already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._committed = True
            return True

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def committed(self) -> bool:
        with self._lock:
            return self._committed


class _Attempt:
    """Mutable bookkeeping for one rollout while it runs."""

    def __init__(
        self,
        rollout_id: str,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        config: RuntimeConfiguration,
        token: CancellationToken,
    ) -> None:
        self.rollout_id = rollout_id
        self.artifact = artifact
        self.target = target
        self.config = config
        self.token = token
        self.previous_image: str | None = None
        # Set once a command that changes the host has been sent.
        self.host_mutated = False
        self.warnings: list[str] = []
        self._unflushed: list[str] = []

    def warn(self, message: str) -> None:
        logger.warning("[%s] %s", self.rollout_id, message)
        self.warnings.append(message)
        self._unflushed.append(message)

    def flush_warnings(self) -> list[str]:
        pending, self._unflushed = self._unflushed, []
        return pending


def new_rollout_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"ro-{ts}-{uuid.uuid4().hex[:6]}"


class RolloutOrchestrator:
    """Drives rollouts of container images onto deployment targets.

    Parameters
    ----------
    channel:
        How commands reach target hosts.
    settings:
        Timeouts, retry and rollback policy. Defaults from the environment.
    ledger:
        Where transitions are recorded. Defaults to ``settings.ledger_path``.
    lease_manager:
        Mutual exclusion per (host, container name). Defaults to a SQLite
        lease table when ``settings.lease_db_path`` is set, else in-process.
    health_probe:
        Checked after the container starts; ``None`` skips verification.
    sleep:
        Injectable sleep used for retry backoff and health polling.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        *,
        settings: DeploySettings | None = None,
        ledger: RolloutLedger | None = None,
        lease_manager: LeaseManager | None = None,
        health_probe: HealthProbe | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or DeploySettings()

        # Fails hard if production constraints are violated
        enforce_production_constraints(self.settings)

        self.channel = channel
        self.ledger = ledger or RolloutLedger(self.settings.ledger_path)
        self.machine = RolloutMachine(self.ledger)
        self.lease_manager = lease_manager or self._default_lease_manager()
        self.health_probe = health_probe
        self._sleep = sleep

        self._inflight_lock = threading.Lock()
        # lease_key -> {rollout_id: token}
        self._inflight: dict[str, dict[str, CancellationToken]] = {}

    def _default_lease_manager(self) -> LeaseManager:
        if self.settings.lease_db_path is not None:
            return SqliteLeaseManager(
                self.settings.lease_db_path,
                ttl_seconds=self.settings.lease_ttl_seconds,
                poll_seconds=self.settings.lease_poll_seconds,
            )
        return InProcessLeaseManager()

    @property
    def _command_timeout(self) -> float | None:
        timeout = self.settings.command_timeout_seconds
        return timeout if timeout > 0 else None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def deploy(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        config: RuntimeConfiguration,
        *,
        supersede: bool = False,
        token: CancellationToken | None = None,
        rollout_id: str | None = None,
    ) -> RolloutOutcome:
        """Converge *target* to one running instance of *artifact*.

        Never raises for an ordinary failed rollout; the returned
        ``RolloutOutcome`` carries the reason.

        Parameters
        ----------
        supersede:
            Cancel any other rollout on the same target that has not yet
            started mutating the host, including the current lease holder
            in another process sharing the lease store.
        token:
            Caller-held cancellation handle.
        rollout_id:
            Explicit id (generated when omitted).
        """
        attempt = _Attempt(
            rollout_id or new_rollout_id(),
            artifact,
            target,
            config,
            token or CancellationToken(),
        )
        key = target.lease_key
        self.machine.open(
            attempt.rollout_id,
            key,
            str(artifact),
            details={
                "host": target.host,
                "container_name": target.container_name,
                "runtime": config.model_dump(mode="json"),
            },
        )
        logger.info(
            "[%s] Rollout of %s to %s opened.", attempt.rollout_id, artifact, key
        )

        if supersede:
            cancelled = self.cancel_inflight(key)
            if cancelled:
                logger.info(
                    "[%s] Superseded in-flight rollout(s): %s",
                    attempt.rollout_id,
                    ", ".join(cancelled),
                )
        self._register(key, attempt)

        try:
            with self.lease_manager.lease(
                key, attempt.rollout_id, timeout=self.settings.lease_timeout_seconds
            ):
                return self._run(attempt)
        except LeaseUnavailable as exc:
            return self._fail(attempt, FailureReason.LEASE_UNAVAILABLE, str(exc))
        finally:
            self._unregister(key, attempt.rollout_id)
            if self.machine.is_terminal(attempt.rollout_id):
                self.machine.close(attempt.rollout_id)

    def cancel(self, rollout_id: str) -> bool:
        """Cancel one in-flight rollout. False if unknown or already mutating."""
        with self._inflight_lock:
            for tokens in self._inflight.values():
                if rollout_id in tokens:
                    return self._cancel_local(rollout_id, tokens[rollout_id])
        return False

    def cancel_inflight(self, lease_key: str) -> list[str]:
        """Cancel every cancellable rollout on *lease_key*; return their ids.

        Rollouts of this orchestrator are cancelled through their tokens.
        The current lease holder, which may belong to another process
        sharing the lease store, is asked to cancel through the lease.
        """
        with self._inflight_lock:
            tokens = dict(self._inflight.get(lease_key, {}))
        cancelled = [
            rid for rid, token in tokens.items() if self._cancel_local(rid, token)
        ]
        holder = self.lease_manager.request_cancel(lease_key)
        if holder is not None and holder not in cancelled:
            cancelled.append(holder)
        return cancelled

    def _cancel_local(self, rollout_id: str, token: CancellationToken) -> bool:
        if self.machine.get_state(rollout_id) not in CANCELLABLE_STATES:
            return False
        return token.cancel()

    def _cancel_requested(self, attempt: _Attempt) -> bool:
        return attempt.token.cancelled or self.lease_manager.cancel_requested(
            attempt.target.lease_key, attempt.rollout_id
        )

    def _commit(self, attempt: _Attempt) -> bool:
        """Pass the point of no return, unless a cancel got there first."""
        if not attempt.token.commit():
            return False
        return self.lease_manager.commit(attempt.target.lease_key, attempt.rollout_id)

    def rollback(
        self, target: DeploymentTarget, config: RuntimeConfiguration
    ) -> RolloutOutcome:
        """Redeploy the artifact of the successful rollout before the latest one.

        Uses the digest recorded at pull time when available so that a
        mutable tag does not resolve to the current (bad) image again.
        """
        key = target.lease_key
        current = self.ledger.last_successful(key)
        if current is None:
            raise NoRollbackCandidate(f"No successful rollout recorded for {key}")
        previous = self.ledger.last_successful(key, before=current.rollout_id)
        if previous is None:
            raise NoRollbackCandidate(
                f"No successful rollout before {current.rollout_id} on {key}"
            )
        artifact = ArtifactReference.parse(previous.artifact_ref)
        if previous.pulled_digest and not artifact.digest:
            artifact = artifact.with_digest(previous.pulled_digest)
        logger.info(
            "Rolling %s back to %s (from rollout %s).", key, artifact, previous.rollout_id
        )
        return self.deploy(artifact, target, config)

    # ------------------------------------------------------------------
    # Rollout steps
    # ------------------------------------------------------------------

    def _run(self, attempt: _Attempt) -> RolloutOutcome:
        if self._cancel_requested(attempt):
            return self._fail(attempt, FailureReason.CANCELLED, "Superseded before pulling")

        self._advance(attempt, RolloutState.PULLING)
        max_attempts = max(1, self.settings.pull_attempts)
        delay = self.settings.retry_backoff_seconds
        reason, message = FailureReason.PULL_ERROR, "pull not attempted"

        for number in range(1, max_attempts + 1):
            if self._cancel_requested(attempt):
                return self._fail(attempt, FailureReason.CANCELLED, "Superseded while pulling")
            try:
                with self.channel.connect(attempt.target) as session:
                    result = self._pull(attempt, session)
                    if result.ok:
                        if not self._commit(attempt):
                            return self._fail(
                                attempt, FailureReason.CANCELLED, "Superseded after pulling"
                            )
                        return self._replace(attempt, session, result)
                    reason, message = FailureReason.PULL_ERROR, result.summary()
            except ConnectionFailed as exc:
                if attempt.token.committed:
                    return self._connection_lost(attempt, exc)
                reason, message = FailureReason.CONNECTION_FAILED, str(exc)
            except CommandTimeout as exc:
                # Only the pull can time out here; later steps handle their own.
                reason, message = FailureReason.TIMEOUT, str(exc)

            if number < max_attempts:
                attempt.warn(
                    f"pull attempt {number}/{max_attempts} failed ({message}); "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                delay *= 2

        return self._fail(attempt, reason, message)

    def _pull(self, attempt: _Attempt, session: Session) -> ExecResult:
        logger.info("[%s] Pulling %s.", attempt.rollout_id, attempt.artifact.pull_ref)
        return session.execute(
            docker_commands.pull(attempt.artifact), timeout=self._command_timeout
        )

    def _replace(
        self, attempt: _Attempt, session: Session, pulled: ExecResult
    ) -> RolloutOutcome:
        name = attempt.target.container_name
        match = _PULL_DIGEST_RE.search(pulled.stdout)

        self._advance(
            attempt,
            RolloutState.STOPPING_PREVIOUS,
            pulled_digest=match.group(1) if match else None,
        )
        attempt.previous_image = self._inspect_previous(attempt, session)
        attempt.host_mutated = True
        self._tolerate(attempt, session, docker_commands.stop(name), "stop")

        self._advance(
            attempt, RolloutState.REMOVING_PREVIOUS, previous_image=attempt.previous_image
        )
        self._tolerate(attempt, session, docker_commands.remove(name), "remove")

        self._advance(attempt, RolloutState.STARTING_NEW)
        run = docker_commands.run(name, attempt.artifact.pull_ref, attempt.config)
        try:
            started = session.execute(run, timeout=self._command_timeout)
        except CommandTimeout as exc:
            return self._recover(attempt, session, FailureReason.TIMEOUT, str(exc))
        if not started.ok:
            return self._recover(
                attempt, session, FailureReason.START_ERROR, started.summary()
            )
        container_id = started.stdout.strip()[:12]

        if self.health_probe is not None:
            self._advance(attempt, RolloutState.VERIFYING, container_id=container_id)
            healthy = wait_until_healthy(
                self.health_probe,
                session,
                attempt.target,
                timeout=self.settings.health_check_timeout_seconds,
                interval=self.settings.health_check_interval_seconds,
                sleep=self._sleep,
            )
            if not healthy:
                return self._recover(
                    attempt,
                    session,
                    FailureReason.HEALTH_CHECK_FAILED,
                    f"{name} did not become healthy within "
                    f"{self.settings.health_check_timeout_seconds:.0f}s",
                )

        self._advance(attempt, RolloutState.RUNNING, container_id=container_id)
        logger.info(
            "[%s] %s is running %s.", attempt.rollout_id, name, attempt.artifact.pull_ref
        )
        return self._outcome(attempt, RolloutStatus.SUCCESS, RolloutState.RUNNING)

    def _inspect_previous(self, attempt: _Attempt, session: Session) -> str | None:
        """Image ID of the instance about to be replaced, if there is one."""
        name = attempt.target.container_name
        try:
            result = session.execute(
                docker_commands.inspect_image_id(name), timeout=self._command_timeout
            )
        except CommandTimeout as exc:
            attempt.warn(f"could not inspect previous {name}: {exc}")
            return None
        image = result.stdout.strip()
        if not result.ok or not image:
            logger.info("[%s] No previous instance of %s.", attempt.rollout_id, name)
            return None
        return image

    def _tolerate(
        self, attempt: _Attempt, session: Session, command: list[str], step: str
    ) -> None:
        """Run a step whose failure means "previous instance absent"."""
        try:
            result = session.execute(command, timeout=self._command_timeout)
        except CommandTimeout as exc:
            attempt.warn(f"{step} {attempt.target.container_name} timed out (tolerated): {exc}")
            return
        if not result.ok:
            attempt.warn(
                f"{step} {attempt.target.container_name} failed (tolerated): {result.summary()}"
            )

    def _recover(
        self,
        attempt: _Attempt,
        session: Session,
        reason: FailureReason,
        message: str,
    ) -> RolloutOutcome:
        """Handle a failure after the previous instance was removed."""
        name = attempt.target.container_name
        logger.error("[%s] %s failed: %s", attempt.rollout_id, reason.value, message)

        if not self.settings.rollback_on_failure or attempt.previous_image is None:
            return self._fail(attempt, reason, message, service_down=True)

        self._advance(attempt, RolloutState.ROLLING_BACK, reason=reason.value)
        try:
            session.execute(
                docker_commands.remove(name, force=True), timeout=self._command_timeout
            )
            restored = session.execute(
                docker_commands.run(name, attempt.previous_image, attempt.config),
                timeout=self._command_timeout,
            )
            rollback_error = "" if restored.ok else restored.summary()
        except CommandTimeout as exc:
            rollback_error = str(exc)
        except ConnectionFailed as exc:
            rollback_error = f"connection lost during rollback: {exc}"

        if rollback_error:
            return self._fail(
                attempt,
                reason,
                f"{message}; rollback to {attempt.previous_image} failed: {rollback_error}",
                service_down=True,
            )
        logger.warning(
            "[%s] Restored previous image %s on %s.",
            attempt.rollout_id,
            attempt.previous_image,
            name,
        )
        return self._fail(attempt, reason, message, rolled_back=True)

    def _connection_lost(
        self, attempt: _Attempt, exc: ConnectionFailed
    ) -> RolloutOutcome:
        """Connection dropped after the host started changing."""
        state = self.machine.get_state(attempt.rollout_id)
        # Before stop is sent the previous instance is untouched; once the new
        # container has started the service is known to be up.
        service_down = attempt.host_mutated and state != RolloutState.VERIFYING
        return self._fail(
            attempt,
            FailureReason.CONNECTION_FAILED,
            f"Connection lost during {state.value}: {exc}",
            service_down=service_down,
        )

    # ------------------------------------------------------------------
    # Transitions and outcomes
    # ------------------------------------------------------------------

    def _advance(self, attempt: _Attempt, state: RolloutState, **details: Any) -> None:
        payload = {k: v for k, v in details.items() if v is not None}
        warnings = attempt.flush_warnings()
        if warnings:
            payload["warnings"] = warnings
        self.machine.transition(attempt.rollout_id, state, payload)

    def _fail(
        self,
        attempt: _Attempt,
        reason: FailureReason,
        message: str,
        *,
        rolled_back: bool = False,
        service_down: bool = False,
    ) -> RolloutOutcome:
        self._advance(
            attempt,
            RolloutState.FAILED,
            reason=reason.value,
            message=message,
            rolled_back=rolled_back or None,
            service_down=service_down or None,
        )
        if service_down:
            logger.critical(
                "[%s] SERVICE DOWN: no instance of %s is running on %s (%s).",
                attempt.rollout_id,
                attempt.target.container_name,
                attempt.target.host,
                message,
            )
        else:
            logger.error(
                "[%s] Rollout failed (%s): %s", attempt.rollout_id, reason.value, message
            )
        return self._outcome(
            attempt,
            RolloutStatus.FAILED,
            RolloutState.FAILED,
            reason=reason,
            message=message,
            rolled_back=rolled_back,
            service_down=service_down,
        )

    @staticmethod
    def _outcome(
        attempt: _Attempt,
        status: RolloutStatus,
        final_state: RolloutState,
        **fields: Any,
    ) -> RolloutOutcome:
        return RolloutOutcome(
            rollout_id=attempt.rollout_id,
            status=status,
            final_state=final_state,
            warnings=list(attempt.warnings),
            previous_image=attempt.previous_image,
            **fields,
        )

    # ------------------------------------------------------------------
    # In-flight registry
    # ------------------------------------------------------------------

    def _register(self, key: str, attempt: _Attempt) -> None:
        with self._inflight_lock:
            self._inflight.setdefault(key, {})[attempt.rollout_id] = attempt.token

    def _unregister(self, key: str, rollout_id: str) -> None:
        with self._inflight_lock:
            tokens = self._inflight.get(key)
            if tokens is not None:
                tokens.pop(rollout_id, None)
                if not tokens:
                    del self._inflight[key]
