"""Rollout state machine models — states, transitions, outcomes, records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class RolloutState(str, Enum):
    """Strict state model for one rollout attempt."""

    PENDING = "pending"
    PULLING = "pulling"
    STOPPING_PREVIOUS = "stopping_previous"
    REMOVING_PREVIOUS = "removing_previous"
    STARTING_NEW = "starting_new"
    VERIFYING = "verifying"
    ROLLING_BACK = "rolling_back"
    RUNNING = "running"
    FAILED = "failed"


# Valid state transitions, enforced by RolloutMachine.
# Terminal states (RUNNING, FAILED) have no outgoing transitions.
VALID_TRANSITIONS: dict[RolloutState, set[RolloutState]] = {
    RolloutState.PENDING: {RolloutState.PULLING, RolloutState.FAILED},
    RolloutState.PULLING: {RolloutState.STOPPING_PREVIOUS, RolloutState.FAILED},
    RolloutState.STOPPING_PREVIOUS: {RolloutState.REMOVING_PREVIOUS, RolloutState.FAILED},
    RolloutState.REMOVING_PREVIOUS: {RolloutState.STARTING_NEW, RolloutState.FAILED},
    RolloutState.STARTING_NEW: {
        RolloutState.VERIFYING,
        RolloutState.RUNNING,
        RolloutState.ROLLING_BACK,
        RolloutState.FAILED,
    },
    RolloutState.VERIFYING: {
        RolloutState.RUNNING,
        RolloutState.ROLLING_BACK,
        RolloutState.FAILED,
    },
    RolloutState.ROLLING_BACK: {RolloutState.FAILED},
    RolloutState.RUNNING: set(),  # terminal
    RolloutState.FAILED: set(),  # terminal
}

TERMINAL_STATES: frozenset[RolloutState] = frozenset(
    {RolloutState.RUNNING, RolloutState.FAILED}
)

# No host mutation has happened yet in these states.
CANCELLABLE_STATES: frozenset[RolloutState] = frozenset(
    {RolloutState.PENDING, RolloutState.PULLING}
)


class RolloutStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a rollout ended in FAILED."""

    PULL_ERROR = "pull_error"
    START_ERROR = "start_error"
    HEALTH_CHECK_FAILED = "health_check_failed"
    CONNECTION_FAILED = "connection_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    LEASE_UNAVAILABLE = "lease_unavailable"


class RolloutOutcome(BaseModel):
    """What ``deploy`` returns to its trigger."""

    model_config = ConfigDict(frozen=True)

    rollout_id: str
    status: RolloutStatus
    final_state: RolloutState
    reason: FailureReason | None = None
    message: str = ""
    warnings: list[str] = []
    previous_image: str | None = None
    rolled_back: bool = False
    service_down: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == RolloutStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        """0 on success, 2 when the host was left without an instance, else 1."""
        if self.succeeded:
            return 0
        return 2 if self.service_down else 1


class RolloutRecord(BaseModel):
    """Audit view of one rollout, projected from its ledger entries."""

    model_config = ConfigDict(frozen=True)

    rollout_id: str
    target_key: str
    artifact_ref: str
    started_at: datetime
    finished_at: datetime | None = None
    state: RolloutState = RolloutState.PENDING
    status: RolloutStatus | None = None
    reason: FailureReason | None = None
    warnings: list[str] = []
    pulled_digest: str | None = None
    previous_image: str | None = None
    rolled_back: bool = False
    service_down: bool = False

    @property
    def is_finished(self) -> bool:
        return self.status is not None
