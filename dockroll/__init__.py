"""dockroll: pull-based container rollouts with an auditable ledger.

v0.2.0:
  - Image reference resolver with secret build-argument rejection
  - Idempotent artifact publisher (digest-aware, bounded retries)
  - SSH remote execution channel (ControlMaster, per-session key file)
  - Explicit rollout state machine with per-target leases
  - Rollback to the previous image when the new container fails to start
  - Hash-chained SQLite rollout ledger, history and rollback source
"""

__version__ = "0.2.0"
__description__ = "Container rollout orchestrator with an append-only rollout ledger"

from dockroll.core.orchestrator import RolloutOrchestrator
from dockroll.cli.app import app as cli

__all__ = ["RolloutOrchestrator", "cli", "__version__"]
