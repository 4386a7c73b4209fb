"""Per-job pipeline: build, sign, package and upload one matrix entry.

A job moves through ``Pending -> Building -> [Signing] -> Packaging ->
Uploading -> Done``; any non-terminal state may move to ``Failed``. Stages
run strictly in order and every outcome is appended to ``Job.outcomes``.
"""

from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .capabilities import CapabilityResult, CapabilitySet
from .config import MatrixConfig, PlatformFamily
from .context import TriggerContext
from .errors import (
    BuildFailure,
    MatrixError,
    NotarizationFailure,
    PackagingFailure,
    PublishFailure,
    RunCancelled,
    SigningFailure,
    StageFailure,
)
from .matrix import MatrixEntry
from .packaging import Artifact, package_binary
from .policy import ErrorPolicy, StageKind
from .publish import ArtifactPublisher, PublishResult
from .secrets import CredentialScope

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    SIGNING = "signing"
    PACKAGING = "packaging"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.DONE, JobState.FAILED})

_TRANSITIONS: Dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.BUILDING}),
    JobState.BUILDING: frozenset({JobState.SIGNING, JobState.PACKAGING}),
    JobState.SIGNING: frozenset({JobState.PACKAGING}),
    JobState.PACKAGING: frozenset({JobState.UPLOADING}),
    JobState.UPLOADING: frozenset({JobState.DONE}),
}


@dataclass(slots=True)
class StageOutcome:
    stage: StageKind
    status: str
    tolerated: bool = False
    message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "stage": self.stage.value,
            "status": self.status,
            "tolerated": self.tolerated,
            "message": self.message,
            "logs": self.logs,
        }


@dataclass
class Job:
    entry: MatrixEntry
    state: JobState = JobState.PENDING
    history: List[JobState] = field(default_factory=lambda: [JobState.PENDING])
    outcomes: List[StageOutcome] = field(default_factory=list)
    signed: bool = False
    artifact: Optional[Artifact] = None
    publish: Optional[PublishResult] = None
    failure: Optional[str] = None
    failed_stage: Optional[str] = None

    @property
    def job_id(self) -> str:
        return self.entry.job_id

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: JobState) -> None:
        if self.terminal:
            raise MatrixError(f"Job {self.job_id} is already {self.state.value}; cannot move to {state.value}.")
        if state is not JobState.FAILED and state not in _TRANSITIONS[self.state]:
            raise MatrixError(f"Illegal transition {self.state.value} -> {state.value} for job {self.job_id}.")
        self.state = state
        self.history.append(state)

    def record(self, outcome: StageOutcome) -> None:
        self.outcomes.append(outcome)

    def fail(self, reason: str, stage: Optional[str] = None) -> None:
        self.failure = reason
        self.failed_stage = stage
        self.transition(JobState.FAILED)

    def to_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "entry": self.entry.to_dict(),
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "signed": self.signed,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "publish": self.publish.to_dict() if self.publish else None,
            "failure": self.failure,
            "failed_stage": self.failed_stage,
        }


CredentialProvider = Callable[[PlatformFamily], CredentialScope]


class JobPipeline:
    """Executes the stage sequence for one job at a time; safe to share across threads."""

    def __init__(
        self,
        *,
        config: MatrixConfig,
        capabilities: CapabilitySet,
        policy: ErrorPolicy,
        publisher: ArtifactPublisher,
        workspace: Path,
        credentials: CredentialProvider = CredentialScope.for_platform,
    ) -> None:
        self.config = config
        self.capabilities = capabilities
        self.policy = policy
        self.publisher = publisher
        self.workspace = workspace
        self.credentials = credentials

    def workdir_for(self, job: Job) -> Path:
        return self.workspace / "jobs" / job.job_id

    def run(self, job: Job, context: TriggerContext, cancel: Optional[threading.Event] = None) -> Job:
        workdir = self.workdir_for(job)
        workdir.mkdir(parents=True, exist_ok=True)
        try:
            _check_cancelled(cancel)
            binary = self._build(job, workdir, cancel)
            job.signed = self._sign(job, binary, workdir, context, cancel)
            job.artifact = self._package(job, binary, workdir)
            _check_cancelled(cancel)
            self._upload(job, job.artifact, context)
            job.transition(JobState.DONE)
        except RunCancelled:
            logger.info("Job %s cancelled in state %s", job.job_id, job.state.value)
            shutil.rmtree(workdir / "executables", ignore_errors=True)
            job.artifact = None
            job.fail("cancelled")
        except StageFailure as exc:
            logger.error("Job %s failed at %s: %s", job.job_id, exc.stage, exc)
            job.fail(str(exc), exc.stage)
        return job

    def _build(self, job: Job, workdir: Path, cancel: Optional[threading.Event]) -> Path:
        job.transition(JobState.BUILDING)
        entry = job.entry
        toolchain = self.capabilities.toolchain
        if entry.target.cross_compile and toolchain is not None:
            prepared = toolchain.prepare(entry)
            if not prepared.ok:
                job.record(_outcome(StageKind.BUILD, prepared, "cross-compile prerequisites failed"))
                raise BuildFailure(f"Cross-compile prerequisites for {entry.target.target} failed.")

        result = self.capabilities.builder.build(entry, workdir)
        if not result.ok or result.output is None:
            job.record(_outcome(StageKind.BUILD, result, "build failed"))
            raise BuildFailure(f"Build of {entry.target.target} ({job.job_id}) failed.", details=_details(result))
        job.record(_outcome(StageKind.BUILD, result))
        _check_cancelled(cancel)
        return result.output

    def _sign(
        self,
        job: Job,
        binary: Path,
        workdir: Path,
        context: TriggerContext,
        cancel: Optional[threading.Event],
    ) -> bool:
        entry = job.entry
        profile = self.capabilities.signing_profile(self.config.signing_mode_for(entry.target), entry.platform)
        if not profile.configured or profile.signer is None:
            return False

        job.transition(JobState.SIGNING)
        credentials = self.credentials(entry.platform)
        failure: Optional[SigningFailure] = None
        result = profile.signer.sign(binary, workdir, credentials)
        _check_cancelled(cancel)
        if result.ok:
            job.record(_outcome(StageKind.SIGN, result))
            if profile.notarizer is not None:
                result = profile.notarizer.notarize(binary, workdir, credentials, self.config.notarization_timeout)
                _check_cancelled(cancel)
                if result.ok:
                    job.record(_outcome(StageKind.NOTARIZE, result))
                else:
                    failure = NotarizationFailure(f"Notarization of {binary.name} failed.", details=_details(result))
        else:
            failure = SigningFailure(f"Signing of {binary.name} failed.", details=_details(result))

        if failure is None:
            return True

        stage = StageKind(failure.stage)
        tolerated = self.policy.is_tolerated(stage, context)
        job.record(_outcome(stage, result, str(failure), tolerated=tolerated))
        if not tolerated:
            raise failure
        logger.warning("Job %s: %s (tolerated, continuing unsigned)", job.job_id, failure)
        return False

    def _package(self, job: Job, binary: Path, workdir: Path) -> Artifact:
        job.transition(JobState.PACKAGING)
        try:
            artifact = package_binary(
                binary,
                binary_name=self.config.binary_name,
                suffix=job.entry.suffix,
                platform=job.entry.platform,
                destination=workdir / "executables",
                signed=job.signed,
            )
        except PackagingFailure as exc:
            job.record(StageOutcome(stage=StageKind.PACKAGE, status="failed", message=str(exc)))
            raise
        job.record(StageOutcome(stage=StageKind.PACKAGE, status="succeeded", logs=[f"Packaged {artifact.path.name}"]))
        return artifact

    def _upload(self, job: Job, artifact: Artifact, context: TriggerContext) -> None:
        job.transition(JobState.UPLOADING)
        try:
            job.publish = self.publisher.publish(artifact, context)
        except PublishFailure as exc:
            job.record(StageOutcome(stage=StageKind.UPLOAD, status="failed", message=str(exc)))
            raise
        job.record(StageOutcome(stage=StageKind.UPLOAD, status="succeeded", logs=list(job.publish.ephemeral.logs)))


def _check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise RunCancelled("Run cancelled.")


def _outcome(stage: StageKind, result: CapabilityResult, message: Optional[str] = None, *, tolerated: bool = False) -> StageOutcome:
    return StageOutcome(
        stage=stage,
        status="succeeded" if result.ok and message is None else "failed",
        tolerated=tolerated,
        message=message,
        logs=list(result.logs),
    )


def _details(result: CapabilityResult) -> Dict[str, object]:
    return {key: value for key, value in result.details.items() if key != "stdout"}


__all__ = ["Job", "JobPipeline", "JobState", "StageOutcome", "TERMINAL_STATES"]
