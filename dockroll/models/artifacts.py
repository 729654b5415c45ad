"""Artifact models — image references, build outputs, publish results.

A digest (``sha256:<hex>``) is content-addressed and immutable. A tag is a
mutable pointer owned by the registry; it is re-resolved on every pull.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"

_DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
_REPOSITORY_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


class ArtifactReference(BaseModel):
    """An addressable container image: registry + repository + tag/digest."""

    model_config = ConfigDict(frozen=True)

    registry: str = DEFAULT_REGISTRY
    repository: str
    tag: str | None = DEFAULT_TAG
    digest: str | None = None

    @field_validator("repository")
    @classmethod
    def _check_repository(cls, value: str) -> str:
        if not _REPOSITORY_RE.match(value):
            raise ValueError(f"invalid repository name: {value!r}")
        return value

    @field_validator("tag")
    @classmethod
    def _check_tag(cls, value: str | None) -> str | None:
        if value is not None and not _TAG_RE.match(value):
            raise ValueError(f"invalid tag: {value!r}")
        return value

    @field_validator("digest")
    @classmethod
    def _check_digest(cls, value: str | None) -> str | None:
        if value is not None and not _DIGEST_RE.match(value):
            raise ValueError(f"invalid digest (expected sha256:<64 hex>): {value!r}")
        return value

    @classmethod
    def parse(cls, reference: str) -> ArtifactReference:
        """Parse a Docker-style reference such as ``user/vpn-api:latest``.

        The first path component is treated as a registry host only when
        it contains ``.`` or ``:`` or is ``localhost``.
        """
        text = reference.strip()
        if not text:
            raise ValueError("empty image reference")

        digest: str | None = None
        if "@" in text:
            text, digest = text.split("@", 1)

        tag: str | None = None
        last_component = text.rsplit("/", 1)[-1]
        if ":" in last_component:
            text, tag = text.rsplit(":", 1)

        registry = DEFAULT_REGISTRY
        head, sep, rest = text.partition("/")
        if sep and _looks_like_registry(head):
            registry, text = head, rest

        if tag is None and digest is None:
            tag = DEFAULT_TAG

        return cls(registry=registry, repository=text, tag=tag, digest=digest)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        """Repository name, prefixed with the registry unless it is Docker Hub."""
        if self.registry == DEFAULT_REGISTRY:
            return self.repository
        return f"{self.registry}/{self.repository}"

    @property
    def tagged_ref(self) -> str:
        """``name:tag`` — the mutable pointer used for pushes."""
        return f"{self.name}:{self.tag or DEFAULT_TAG}"

    @property
    def pull_ref(self) -> str:
        """Digest-pinned reference when known, otherwise the tagged one."""
        if self.digest:
            return f"{self.name}@{self.digest}"
        return self.tagged_ref

    @property
    def is_pinned(self) -> bool:
        return self.digest is not None

    def with_digest(self, digest: str) -> ArtifactReference:
        """Return a copy pinned to *digest* (validated)."""
        return ArtifactReference(
            registry=self.registry,
            repository=self.repository,
            tag=self.tag,
            digest=digest,
        )

    def __str__(self) -> str:
        text = self.name
        if self.tag:
            text += f":{self.tag}"
        if self.digest:
            text += f"@{self.digest}"
        return text


class BuildOutput(BaseModel):
    """What the build step hands over: the compiled binary and image identity.

    ``build_args`` holds only the *names* of build arguments that were
    passed to the image build, so they can be checked for secrets.
    """

    model_config = ConfigDict(frozen=True)

    binary_path: Path
    image: str
    image_digest: str | None = None
    build_args: list[str] = []


class RegistryCredentials(BaseModel):
    """Registry login. The password never appears in reprs or logs."""

    model_config = ConfigDict(frozen=True)

    username: str
    password: SecretStr


class PublishedReference(BaseModel):
    """Result of a publish: the reference pinned to the digest the registry holds."""

    model_config = ConfigDict(frozen=True)

    reference: ArtifactReference
    digest: str
    already_present: bool = False
    attempts: int = 1
    published_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
