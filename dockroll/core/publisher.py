"""Artifact publisher — idempotent push of a resolved image to its registry.

Idempotency
-----------
- When the reference pins a digest and the registry already serves that
  digest under the tag, the push is skipped (``already_present=True``).
- Otherwise the tag is overwritten (last writer wins); the digest
  returned by the registry is the immutable identity of what was pushed.

Retry policy
------------
Only ``NetworkError`` is retried, with exponential backoff.
``AuthenticationFailed``, ``QuotaExceeded`` and ``DigestMismatch``
propagate on the first occurrence.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from dockroll.bridge.registry import (
    AuthenticationFailed,
    DigestMismatch,
    NetworkError,
    PublishError,
    QuotaExceeded,
    RegistryClient,
)
from dockroll.models.artifacts import (
    ArtifactReference,
    PublishedReference,
    RegistryCredentials,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ArtifactPublisher",
    "AuthenticationFailed",
    "DigestMismatch",
    "NetworkError",
    "PublishError",
    "QuotaExceeded",
]


class ArtifactPublisher:
    """Pushes artifacts through a ``RegistryClient`` with bounded retries.

    Parameters
    ----------
    registry:
        The registry backend.
    max_attempts:
        Total attempts for transient failures (>= 1).
    backoff_seconds:
        Delay before the first retry; doubled on each subsequent retry.
    sleep:
        Injectable sleep function (tests pass a no-op).
    """

    def __init__(
        self,
        registry: RegistryClient,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._registry = registry
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._sleep = sleep

    def publish(
        self, reference: ArtifactReference, credentials: RegistryCredentials
    ) -> PublishedReference:
        """Publish *reference*; return it pinned to the registry's digest."""
        delay = self._backoff
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._publish_once(reference, credentials, attempt)
            except NetworkError as exc:
                if attempt >= self._max_attempts:
                    logger.error(
                        "Publish of %s failed after %d attempts: %s",
                        reference.tagged_ref,
                        attempt,
                        exc,
                    )
                    raise
                logger.warning(
                    "Publish of %s hit a transient error (%s); retry %d/%d in %.1fs.",
                    reference.tagged_ref,
                    exc,
                    attempt,
                    self._max_attempts - 1,
                    delay,
                )
                self._sleep(delay)
                delay *= 2

    def _publish_once(
        self,
        reference: ArtifactReference,
        credentials: RegistryCredentials,
        attempt: int,
    ) -> PublishedReference:
        if reference.digest:
            remote = self._registry.remote_digest(reference, credentials)
            if remote == reference.digest:
                logger.info(
                    "%s already serves %s; nothing to push.",
                    reference.tagged_ref,
                    reference.digest,
                )
                return PublishedReference(
                    reference=reference,
                    digest=reference.digest,
                    already_present=True,
                    attempts=attempt,
                )

        digest = self._registry.push(reference, credentials)
        if reference.digest and digest != reference.digest:
            raise DigestMismatch(
                f"Pushed {reference.tagged_ref} but registry reports {digest}, "
                f"expected {reference.digest}"
            )
        logger.info("Published %s (%s).", reference.tagged_ref, digest)
        return PublishedReference(
            reference=reference.with_digest(digest),
            digest=digest,
            attempts=attempt,
        )
