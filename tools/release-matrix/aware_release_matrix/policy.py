"""Per-stage failure tolerance."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from .conditions import ConditionEvaluator, Predicate
from .context import TriggerContext


class StageKind(str, Enum):
    BUILD = "build"
    SIGN = "sign"
    NOTARIZE = "notarize"
    PACKAGE = "package"
    UPLOAD = "upload"


TOLERABLE_STAGES = frozenset({StageKind.SIGN, StageKind.NOTARIZE})


class ErrorPolicy:
    """Signing may fail softly unless the run is a canonical release.

    ``release_predicate`` describes a canonical release (canonical owner,
    push event, tag ref). Build, packaging and upload failures are never
    tolerated.
    """

    def __init__(self, release_predicate: Predicate, evaluator: Optional[ConditionEvaluator] = None) -> None:
        self.release_predicate = release_predicate
        self.evaluator = evaluator or ConditionEvaluator()

    def is_tolerated(self, stage: StageKind | str, context: TriggerContext) -> bool:
        if StageKind(stage) not in TOLERABLE_STAGES:
            return False
        return not self.evaluator.evaluate(self.release_predicate, context)


__all__ = ["ErrorPolicy", "StageKind", "TOLERABLE_STAGES"]
