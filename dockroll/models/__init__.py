"""dockroll data models — all Pydantic v2, all frozen (immutable)."""

from dockroll.models.artifacts import (
    DEFAULT_REGISTRY,
    ArtifactReference,
    BuildOutput,
    PublishedReference,
    RegistryCredentials,
)
from dockroll.models.ledger import LedgerEntry
from dockroll.models.rollout import (
    CANCELLABLE_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    FailureReason,
    RolloutOutcome,
    RolloutRecord,
    RolloutState,
    RolloutStatus,
)
from dockroll.models.targets import DeploymentTarget, RuntimeConfiguration

__all__ = [
    # artifacts
    "DEFAULT_REGISTRY",
    "ArtifactReference",
    "BuildOutput",
    "PublishedReference",
    "RegistryCredentials",
    # targets
    "DeploymentTarget",
    "RuntimeConfiguration",
    # rollout
    "RolloutState",
    "RolloutStatus",
    "FailureReason",
    "RolloutOutcome",
    "RolloutRecord",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "CANCELLABLE_STATES",
    # ledger
    "LedgerEntry",
]
