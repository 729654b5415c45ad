"""Adversarial tests for the production configuration guard.

Production mode must enforce hard constraints, and permissive settings
must not leak into production rollouts.
"""

from __future__ import annotations

import pytest

from dockroll.config import DeploySettings
from dockroll.core.orchestrator import RolloutOrchestrator
from dockroll.core.production_guard import (
    ProductionConfigError,
    enforce_production_constraints,
)


def _prod(**overrides) -> DeploySettings:
    return DeploySettings(_env_file=None, environment="production", **overrides)


class TestProductionGuardDebugMode:
    def test_debug_true_in_production_raises(self):
        with pytest.raises(ProductionConfigError, match="debug=True"):
            enforce_production_constraints(_prod(debug=True))

    def test_clean_production_passes(self):
        enforce_production_constraints(_prod())  # should not raise

    def test_debug_true_in_development_allowed(self):
        enforce_production_constraints(
            DeploySettings(_env_file=None, environment="development", debug=True)
        )


class TestProductionGuardTransport:
    def test_host_key_checking_required(self):
        with pytest.raises(ProductionConfigError, match="strict_host_key_checking"):
            enforce_production_constraints(_prod(strict_host_key_checking=False))

    def test_unbounded_commands_rejected(self):
        with pytest.raises(ProductionConfigError, match="command_timeout_seconds"):
            enforce_production_constraints(_prod(command_timeout_seconds=0))

    def test_unbounded_lease_wait_rejected(self):
        with pytest.raises(ProductionConfigError, match="lease_timeout_seconds"):
            enforce_production_constraints(_prod(lease_timeout_seconds=0))

    def test_all_violations_reported_together(self):
        with pytest.raises(ProductionConfigError) as excinfo:
            enforce_production_constraints(
                _prod(debug=True, strict_host_key_checking=False)
            )
        message = str(excinfo.value)
        assert "debug=True" in message
        assert "strict_host_key_checking" in message


class TestOrchestratorRunsGuard:
    def test_orchestrator_refuses_bad_production_settings(self, docker_host, ledger):
        with pytest.raises(ProductionConfigError):
            RolloutOrchestrator(docker_host, settings=_prod(debug=True), ledger=ledger)

    def test_orchestrator_accepts_development_settings(self, docker_host, ledger):
        settings = DeploySettings(_env_file=None, debug=True, strict_host_key_checking=False)
        RolloutOrchestrator(docker_host, settings=settings, ledger=ledger)
