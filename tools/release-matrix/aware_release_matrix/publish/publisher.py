"""Routes a packaged artifact to the ephemeral and permanent stores."""

from __future__ import annotations

import logging
from typing import Optional

from ..conditions import ConditionEvaluator, Predicate
from ..context import TriggerContext
from ..errors import PublishFailure
from ..packaging import Artifact
from .adapters import StorageAdapter
from .models import PublishResult, UploadResult

logger = logging.getLogger(__name__)


class ArtifactPublisher:
    """Always uploads to the ephemeral store; uploads to the release store when gated in.

    An ephemeral failure fails the job. A permanent failure is recorded on the
    result and left for the run report; it never fails the job.
    """

    def __init__(
        self,
        ephemeral: StorageAdapter,
        permanent: Optional[StorageAdapter],
        permanent_predicate: Predicate,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        self.ephemeral = ephemeral
        self.permanent = permanent
        self.permanent_predicate = permanent_predicate
        self.evaluator = evaluator or ConditionEvaluator()

    def publishes_permanently(self, context: TriggerContext) -> bool:
        return self.permanent is not None and self.evaluator.evaluate(self.permanent_predicate, context)

    def publish(self, artifact: Artifact, context: TriggerContext) -> PublishResult:
        attempt_permanent = self.publishes_permanently(context)

        ephemeral = self.ephemeral.publish(artifact, context)
        if not ephemeral.ok:
            raise PublishFailure(
                f"Upload of {artifact.name} to {ephemeral.adapter} failed.",
                details={"upload": ephemeral.to_dict()},
            )

        result = PublishResult(artifact=artifact, ephemeral=ephemeral)
        if attempt_permanent and self.permanent is not None:
            result.permanent = self._publish_permanent(self.permanent, artifact, context)
            if not result.permanent.ok:
                logger.warning(
                    "Release asset upload of %s via %s failed; job outcome unchanged",
                    artifact.name,
                    result.permanent.adapter,
                )
        return result

    def _publish_permanent(self, adapter: StorageAdapter, artifact: Artifact, context: TriggerContext) -> UploadResult:
        try:
            return adapter.publish(artifact, context)
        except Exception as exc:
            logger.exception("Release store adapter raised while uploading %s", artifact.name)
            return UploadResult(
                adapter=getattr(adapter, "name", type(adapter).__name__),
                status="failed",
                logs=[f"Release asset upload raised {type(exc).__name__}: {exc}"],
            )


__all__ = ["ArtifactPublisher"]
