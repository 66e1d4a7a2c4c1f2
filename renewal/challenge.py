"""
ChallengeChannel — serves the HTTP-01 response from object storage.

The gateway redirects ``http://<domain>/.well-known/acme-challenge/*`` to the
storage container, so publishing is a single object write.  The content type
is fixed so the redirect target returns a plain-text body the authority (and
a browser) can read.
"""
from __future__ import annotations

import logging

from cloud.base import CloudError, ObjectStore
from renewal.errors import PublishError
from renewal.models import ChallengeArtifact

logger = logging.getLogger(__name__)

CHALLENGE_CONTENT_TYPE = "text/plain; charset=utf-8"


class ChallengeChannel:
    def __init__(self, store: ObjectStore, container: str) -> None:
        self.store = store
        self.container = container

    def publish(self, artifact: ChallengeArtifact) -> None:
        try:
            self.store.put_object(
                self.container,
                artifact.path,
                artifact.content.encode("utf-8"),
                CHALLENGE_CONTENT_TYPE,
            )
        except CloudError as exc:
            raise PublishError(
                f"Could not publish challenge {artifact.token} to {self.container}/{artifact.path}: {exc}"
            ) from exc
        logger.info("Published challenge response at %s/%s", self.container, artifact.path)

    def retract(self, artifact: ChallengeArtifact) -> None:
        """Best effort: a stale challenge file is harmless once the order is resolved."""
        try:
            self.store.delete_object(self.container, artifact.path)
        except CloudError as exc:
            logger.warning("Failed to delete challenge file %s/%s: %s", self.container, artifact.path, exc)
            return
        logger.info("Removed challenge response %s/%s", self.container, artifact.path)
