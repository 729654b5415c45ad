"""Production configuration guard — enforces hard constraints in production.

The guard runs once when an orchestrator is built and fails hard
(raises ``ProductionConfigError``) if any constraint is violated. Other
code should not scatter ``if is_production`` checks.
"""

from __future__ import annotations

import logging

from dockroll.config import DeploySettings

logger = logging.getLogger(__name__)


class ProductionConfigError(RuntimeError):
    """Raised when production configuration constraints are violated.

    The process should exit; this error must not be caught and ignored.
    """


def enforce_production_constraints(settings: DeploySettings) -> None:
    """Validate all production-critical settings at once.

    Constraints enforced
    --------------------
    1. Debug mode must be disabled.
    2. SSH host keys must be checked strictly.
    3. Every remote command must be bounded by a positive timeout.
    4. Lease waits must be bounded.

    Raises
    ------
    ProductionConfigError
        Listing every violation found.
    """
    if not settings.is_production:
        return

    violations: list[str] = []

    if settings.debug:
        violations.append(
            "debug=True is not allowed in production. Set DOCKROLL_DEBUG=false."
        )

    if not settings.strict_host_key_checking:
        violations.append(
            "strict_host_key_checking must be enabled in production. "
            "Set DOCKROLL_STRICT_HOST_KEY_CHECKING=true."
        )

    if settings.command_timeout_seconds <= 0:
        violations.append(
            "command_timeout_seconds must be positive in production. "
            "Set DOCKROLL_COMMAND_TIMEOUT_SECONDS."
        )

    if settings.lease_timeout_seconds <= 0:
        violations.append(
            "lease_timeout_seconds must be positive in production. "
            "Set DOCKROLL_LEASE_TIMEOUT_SECONDS."
        )

    if violations:
        msg = (
            "Production configuration guard failed.\n"
            + "\n".join(f"  - {v}" for v in violations)
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production configuration guard passed.")
