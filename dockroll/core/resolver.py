"""Image reference resolver — turns a finished build into an ArtifactReference.

Checks performed before anything is published:
- the compiled binary exists and is non-empty (``BuildIncomplete``)
- no build argument name looks like a runtime secret (``SecretInBuildInput``);
  build arguments end up in image layer history, so secrets belong in the
  runtime environment bundle on the target host instead.

No side effects.
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Iterable

from dockroll.core.hasher import file_sha256
from dockroll.models.artifacts import ArtifactReference, BuildOutput

logger = logging.getLogger(__name__)

DEFAULT_SECRET_PATTERNS: tuple[str, ...] = (
    "*PASSWORD*",
    "*SECRET*",
    "*TOKEN*",
    "*_KEY",
    "DATABASE_URL",
)


class BuildIncomplete(RuntimeError):
    """Raised when the compiled artifact is missing or zero-sized."""


class SecretInBuildInput(RuntimeError):
    """Raised when a build argument name matches a secret pattern."""


class ImageReferenceResolver:
    """Validates build outputs and produces addressable image references.

    Parameters
    ----------
    secret_patterns:
        Shell-style patterns (case-insensitive) for build argument names
        that must not be used. Defaults to ``DEFAULT_SECRET_PATTERNS``.
    """

    def __init__(self, secret_patterns: Iterable[str] | None = None) -> None:
        patterns = DEFAULT_SECRET_PATTERNS if secret_patterns is None else secret_patterns
        self._patterns = tuple(p.upper() for p in patterns)

    def resolve(self, build_output: BuildOutput) -> ArtifactReference:
        """Validate *build_output* and return its ArtifactReference."""
        binary = build_output.binary_path
        if not binary.is_file():
            raise BuildIncomplete(f"Compiled artifact not found: {binary}")
        size = binary.stat().st_size
        if size == 0:
            raise BuildIncomplete(f"Compiled artifact is empty: {binary}")

        leaked = self.secret_build_args(build_output.build_args)
        if leaked:
            raise SecretInBuildInput(
                "Build arguments look like runtime secrets and would be baked "
                f"into image history: {', '.join(sorted(leaked))}. "
                "Supply them through the runtime env file instead."
            )

        reference = ArtifactReference.parse(build_output.image)
        if build_output.image_digest:
            if reference.digest and reference.digest != build_output.image_digest:
                raise ValueError(
                    f"Image {build_output.image} is pinned to {reference.digest} "
                    f"but the build reported {build_output.image_digest}"
                )
            reference = reference.with_digest(build_output.image_digest)

        logger.info(
            "Resolved %s (binary %s, %d bytes, %s)",
            reference,
            binary.name,
            size,
            file_sha256(binary),
        )
        return reference

    def secret_build_args(self, names: Iterable[str]) -> list[str]:
        """Return the build argument names that match a secret pattern."""
        return [
            name
            for name in names
            if any(fnmatch.fnmatchcase(name.upper(), p) for p in self._patterns)
        ]


def resolve(build_output: BuildOutput) -> ArtifactReference:
    """Resolve with the default secret patterns."""
    return ImageReferenceResolver().resolve(build_output)
