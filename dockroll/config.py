"""Deployment settings — env-driven via pydantic-settings.

Reads from a ``.env`` file and ``DOCKROLL_*`` environment variables.
Per-service runtime configuration (network, aliases, env bundle) is not
here; it lives in a TOML file loaded into ``RuntimeConfiguration``.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class DeploySettings(BaseSettings):
    """Settings for the rollout pipeline, overridable from the environment.

    Examples
    --------
    Override via environment::

        export DOCKROLL_ENVIRONMENT=production
        export DOCKROLL_COMMAND_TIMEOUT_SECONDS=120
        export DOCKROLL_LEASE_DB_PATH=/var/lib/dockroll/leases.db

    Or via .env file::

        DOCKROLL_LOG_LEVEL=DEBUG
        DOCKROLL_ROLLBACK_ON_FAILURE=false
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DOCKROLL_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage
    ledger_path: Path = Path(".dockroll/ledger.db")
    # None -> leases are only exclusive within this process
    lease_db_path: Path | None = None

    # Leasing
    lease_timeout_seconds: float = 600.0
    lease_ttl_seconds: float = 1800.0
    lease_poll_seconds: float = 0.5

    # Remote execution
    command_timeout_seconds: float = 300.0
    connect_timeout_seconds: int = 10
    strict_host_key_checking: bool = True
    known_hosts_path: Path | None = None

    # Retry policy (pre-mutation steps and registry pushes only)
    pull_attempts: int = 3
    publish_attempts: int = 5
    retry_backoff_seconds: float = 2.0

    # Failure handling
    rollback_on_failure: bool = True
    health_check_timeout_seconds: float = 30.0
    health_check_interval_seconds: float = 2.0

    # Build-argument names that must never carry runtime secrets
    secret_build_arg_patterns: list[str] = [
        "*PASSWORD*",
        "*SECRET*",
        "*TOKEN*",
        "*_KEY",
        "DATABASE_URL",
    ]

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"
