"""Rollout ledger entry model (append-only, hash-chained).

One entry per state transition of a rollout. Entries for the same
``rollout_id`` form a SHA-256 hash chain, so a rewritten or deleted
transition is detectable.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only rollout ledger.

    ``RolloutRecord`` is a projection of these entries. It does not
    compute truth — it displays it.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    rollout_id: str
    target_key: str
    artifact_ref: str
    state_transition: str  # "from_state->to_state", e.g. "pulling->stopping_previous"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: dict[str, Any] = {}
    schema_version: str = "2026-10"
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry

    @property
    def from_state(self) -> str:
        return self.state_transition.split("->", 1)[0]

    @property
    def to_state(self) -> str:
        return self.state_transition.split("->", 1)[-1]
