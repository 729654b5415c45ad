"""Deployment target and runtime configuration models.

The container name on a target host is the sole identity of the deployed
instance; there is no other instance registry. ``RuntimeConfiguration`` is
opaque to the orchestrator and is handed to the container runtime verbatim.
"""

from __future__ import annotations

import re
import tomllib
from pathlib import Path

from pydantic import BaseModel, ConfigDict, SecretStr, field_validator

_CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]+$")
_RESTART_POLICY_RE = re.compile(r"^(no|always|unless-stopped|on-failure(:\d+)?)$")


class DeploymentTarget(BaseModel):
    """A host to deploy to, the credentials to reach it, and the instance name.

    Either ``private_key`` (key material, e.g. injected from a CI secret) or
    ``identity_file`` (a key already on disk) may be supplied. With neither,
    the SSH agent / default identities are used.
    """

    model_config = ConfigDict(frozen=True)

    host: str
    username: str
    container_name: str
    port: int = 22
    private_key: SecretStr | None = None
    identity_file: Path | None = None

    @field_validator("container_name")
    @classmethod
    def _check_container_name(cls, value: str) -> str:
        if not _CONTAINER_NAME_RE.match(value):
            raise ValueError(f"invalid container name: {value!r}")
        return value

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        if not value or any(ch.isspace() for ch in value) or value.startswith("-"):
            raise ValueError(f"invalid host: {value!r}")
        return value

    @property
    def lease_key(self) -> str:
        """``<host>/<container_name>`` — the unit of mutual exclusion."""
        return f"{self.host}/{self.container_name}"

    @property
    def destination(self) -> str:
        return f"{self.username}@{self.host}"


class RuntimeConfiguration(BaseModel):
    """How the new container is run: network, aliases, restart policy, env bundle.

    ``env_file`` is a path on the *target host*; its contents never pass
    through the pipeline.
    """

    model_config = ConfigDict(frozen=True)

    network: str | None = None
    network_alias: str | None = None
    extra_hosts: dict[str, str] = {}
    restart_policy: str = "unless-stopped"
    env_file: str | None = None
    published_ports: list[str] = []

    @field_validator("restart_policy")
    @classmethod
    def _check_restart_policy(cls, value: str) -> str:
        if not _RESTART_POLICY_RE.match(value):
            raise ValueError(f"unsupported restart policy: {value!r}")
        return value

    @classmethod
    def from_toml(cls, path: Path) -> RuntimeConfiguration:
        """Load from a TOML file, reading the ``[runtime]`` table if present."""
        with Path(path).open("rb") as fh:
            data = tomllib.load(fh)
        return cls.model_validate(data.get("runtime", data))
