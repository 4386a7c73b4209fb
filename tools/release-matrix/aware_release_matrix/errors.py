"""Exception taxonomy for matrix expansion and job execution."""

from __future__ import annotations

from typing import Optional


class MatrixError(RuntimeError):
    """Base class for release-matrix failures."""


class ConfigurationError(MatrixError):
    """Raised when the matrix configuration itself is invalid."""


class ConditionEvaluationError(ConfigurationError):
    """Raised when a gating predicate cannot be evaluated.

    This is a configuration defect: the run is aborted instead of letting a
    job be routed with a silently wrong decision.
    """


class RunCancelled(MatrixError):
    """Raised inside a job when the owning run has been cancelled."""


class StageFailure(MatrixError):
    """A pipeline stage finished without success."""

    stage: str = "unknown"

    def __init__(self, message: str, *, details: Optional[dict[str, object]] = None) -> None:
        super().__init__(message)
        self.details = dict(details or {})


class BuildFailure(StageFailure):
    stage = "build"


class SigningFailure(StageFailure):
    stage = "sign"


class NotarizationFailure(SigningFailure):
    stage = "notarize"


class PackagingFailure(StageFailure):
    stage = "package"


class PublishFailure(StageFailure):
    stage = "upload"


__all__ = [
    "BuildFailure",
    "ConditionEvaluationError",
    "ConfigurationError",
    "MatrixError",
    "NotarizationFailure",
    "PackagingFailure",
    "PublishFailure",
    "RunCancelled",
    "SigningFailure",
    "StageFailure",
]
