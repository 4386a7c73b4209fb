"""Release build matrix orchestration: gating, expansion and per-job pipelines."""

__version__ = "0.1.0"

from .conditions import All, Always, Any, ConditionEvaluator, Eq, Ne, Not, Predicate, Truthy, parse_predicate
from .config import BuildTarget, DispatchInput, MatrixConfig, PlatformFamily, SigningMode, default_config, load_config
from .context import EventKind, RefKind, TriggerContext
from .errors import (
    BuildFailure,
    ConditionEvaluationError,
    ConfigurationError,
    MatrixError,
    NotarizationFailure,
    PackagingFailure,
    PublishFailure,
    RunCancelled,
    SigningFailure,
    StageFailure,
)
from .matrix import MatrixEntry, MatrixExpander, RunnerTable, expand_config
from .packaging import Artifact, artifact_name, package_binary, render_suffix
from .pipeline import Job, JobPipeline, JobState, StageOutcome
from .policy import ErrorPolicy, StageKind
from .publish import ArtifactPublisher, PublishResult, UploadResult
from .run import ReleaseRun, RunReport, build_run, default_capabilities

__all__ = [
    "__version__",
    "All",
    "Always",
    "Any",
    "Artifact",
    "ArtifactPublisher",
    "BuildFailure",
    "BuildTarget",
    "ConditionEvaluationError",
    "ConditionEvaluator",
    "ConfigurationError",
    "DispatchInput",
    "Eq",
    "ErrorPolicy",
    "EventKind",
    "Job",
    "JobPipeline",
    "JobState",
    "MatrixConfig",
    "MatrixEntry",
    "MatrixError",
    "MatrixExpander",
    "Ne",
    "Not",
    "NotarizationFailure",
    "PackagingFailure",
    "PlatformFamily",
    "Predicate",
    "PublishFailure",
    "PublishResult",
    "RefKind",
    "ReleaseRun",
    "RunCancelled",
    "RunReport",
    "RunnerTable",
    "SigningFailure",
    "SigningMode",
    "StageFailure",
    "StageKind",
    "StageOutcome",
    "TriggerContext",
    "Truthy",
    "UploadResult",
    "artifact_name",
    "build_run",
    "default_capabilities",
    "default_config",
    "expand_config",
    "load_config",
    "package_binary",
    "parse_predicate",
    "render_suffix",
]
