"""Deterministic rollout state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Terminal states (RUNNING, FAILED) are final
- Every transition recorded in the rollout ledger
"""

from __future__ import annotations

import threading
from typing import Any

from dockroll.core.rollout_ledger import RolloutLedger
from dockroll.models.ledger import LedgerEntry
from dockroll.models.rollout import TERMINAL_STATES, VALID_TRANSITIONS, RolloutState

# Pseudo-state used as the "from" side of the entry that opens a rollout.
OPENED = "opened"


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class RolloutMachine:
    """Tracks the state of in-flight rollouts and records every transition.

    Parameters
    ----------
    ledger:
        The rollout ledger to record transitions into.
    """

    def __init__(self, ledger: RolloutLedger) -> None:
        self._ledger = ledger
        self._lock = threading.Lock()
        # rollout_id -> (target_key, artifact_ref, state)
        self._rollouts: dict[str, tuple[str, str, RolloutState]] = {}

    @property
    def ledger(self) -> RolloutLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def open(
        self,
        rollout_id: str,
        target_key: str,
        artifact_ref: str,
        details: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Create a rollout in PENDING and record its opening entry."""
        with self._lock:
            if rollout_id in self._rollouts:
                raise InvalidTransitionError(f"Rollout {rollout_id} is already open")
            self._rollouts[rollout_id] = (target_key, artifact_ref, RolloutState.PENDING)
        return self._ledger.append(
            LedgerEntry(
                rollout_id=rollout_id,
                target_key=target_key,
                artifact_ref=artifact_ref,
                state_transition=f"{OPENED}->{RolloutState.PENDING.value}",
                details=details or {},
            )
        )

    def get_state(self, rollout_id: str) -> RolloutState:
        """Return the current state of an open rollout."""
        with self._lock:
            try:
                return self._rollouts[rollout_id][2]
            except KeyError:
                raise KeyError(f"Unknown rollout {rollout_id}") from None

    def is_terminal(self, rollout_id: str) -> bool:
        return self.get_state(rollout_id) in TERMINAL_STATES

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        rollout_id: str,
        target_state: RolloutState,
        details: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Move a rollout to *target_state*, recording it in the ledger.

        Returns the sealed LedgerEntry.
        """
        with self._lock:
            try:
                target_key, artifact_ref, current = self._rollouts[rollout_id]
            except KeyError:
                raise InvalidTransitionError(f"Unknown rollout {rollout_id}") from None

            allowed = VALID_TRANSITIONS.get(current, set())
            if target_state not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition rollout {rollout_id} from {current.value} "
                    f"to {target_state.value}. Allowed: {sorted(s.value for s in allowed)}"
                )
            self._rollouts[rollout_id] = (target_key, artifact_ref, target_state)

        return self._ledger.append(
            LedgerEntry(
                rollout_id=rollout_id,
                target_key=target_key,
                artifact_ref=artifact_ref,
                state_transition=f"{current.value}->{target_state.value}",
                details=details or {},
            )
        )

    def close(self, rollout_id: str) -> None:
        """Forget a finished rollout (it must be terminal)."""
        with self._lock:
            entry = self._rollouts.get(rollout_id)
            if entry is None:
                return
            if entry[2] not in TERMINAL_STATES:
                raise InvalidTransitionError(
                    f"Rollout {rollout_id} is still {entry[2].value}"
                )
            del self._rollouts[rollout_id]

    def get_available_transitions(self, rollout_id: str) -> set[RolloutState]:
        """Return the set of valid target states for a rollout."""
        return VALID_TRANSITIONS.get(self.get_state(rollout_id), set())
