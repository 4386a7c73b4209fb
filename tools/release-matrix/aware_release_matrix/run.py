"""Run-level orchestration: gate, expand, execute jobs in parallel, report."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .capabilities import (
    AptCrossToolchain,
    CapabilitySet,
    CargoBuild,
    CodesignSigner,
    NotarytoolNotarizer,
    SigntoolSigner,
)
from .conditions import ConditionEvaluator
from .config import MatrixConfig, PlatformFamily
from .context import TriggerContext
from .errors import ConfigurationError
from .matrix import MatrixEntry, expand_config
from .pipeline import Job, JobPipeline, JobState
from .policy import ErrorPolicy
from .publish import ArtifactPublisher, DirectoryStoreAdapter, StorageAdapter

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    status: str
    context: TriggerContext
    jobs: List[Job] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def failed_jobs(self) -> List[Job]:
        return [job for job in self.jobs if job.state is JobState.FAILED]

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "context": self.context.model_dump(mode="json"),
            "cancelled": self.cancelled,
            "jobs": [job.to_dict() for job in self.jobs],
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class ReleaseRun:
    """Fail-soft execution of every matrix entry for one trigger context.

    Jobs share no mutable state and may finish in any order. One job failing
    never cancels its siblings; :meth:`cancel` aborts every job that has not
    reached a terminal state, and a configuration error aborts the whole run.
    """

    def __init__(
        self,
        config: MatrixConfig,
        pipeline: JobPipeline,
        *,
        max_workers: Optional[int] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        self.config = config
        self.pipeline = pipeline
        self.max_workers = max_workers
        self.evaluator = evaluator or ConditionEvaluator()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def plan(self, context: TriggerContext) -> List[MatrixEntry]:
        return expand_config(self.config, context, self.evaluator)

    def execute(self, context: TriggerContext) -> RunReport:
        context = context.with_input_defaults(self.config.declared_inputs())
        report = RunReport(status="success", context=context)
        if not self.evaluator.evaluate(self.config.trigger_predicate(), context):
            logger.info("Trigger %s on %s does not start a release run", context.event.value, context.ref_name)
            report.status = "skipped"
            report.finished_at = datetime.now(timezone.utc)
            return report

        report.jobs = [Job(entry=entry) for entry in self.plan(context)]
        if report.jobs:
            self._execute_jobs(report.jobs, context)

        for job in report.jobs:
            if job.publish is not None and job.publish.permanent_failed:
                report.warnings.append(f"Release asset upload failed for {job.job_id}; the job itself completed.")
        report.cancelled = self.cancelled
        report.status = "failure" if report.failed_jobs else "success"
        report.finished_at = datetime.now(timezone.utc)
        return report

    def _execute_jobs(self, jobs: List[Job], context: TriggerContext) -> None:
        config_error: Optional[ConfigurationError] = None
        workers = self.max_workers or len(jobs)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="release-matrix") as executor:
            futures: Dict[Future, Job] = {
                executor.submit(self.pipeline.run, job, context, self._cancel): job for job in jobs
            }
            for future in as_completed(futures):
                job = futures[future]
                try:
                    future.result()
                except ConfigurationError as exc:
                    logger.error("Configuration error in job %s; aborting run: %s", job.job_id, exc)
                    self._cancel.set()
                    if config_error is None:
                        config_error = exc
                    if not job.terminal:
                        job.fail(f"configuration error: {exc}")
                except Exception as exc:
                    logger.exception("Job %s raised unexpectedly", job.job_id)
                    if not job.terminal:
                        job.fail(f"unexpected error: {exc}")
        if config_error is not None:
            raise config_error


def default_capabilities(config: MatrixConfig, *, source_root: Path, entitlements: Optional[Path] = None) -> CapabilitySet:
    return CapabilitySet(
        builder=CargoBuild(
            binary_name=config.binary_name,
            source_root=source_root,
            build_args=config.build_args,
            build_env=config.build_env,
        ),
        toolchain=AptCrossToolchain(),
        signers={
            PlatformFamily.MACOS: CodesignSigner(entitlements=entitlements),
            PlatformFamily.WINDOWS: SigntoolSigner(),
        },
        notarizer=NotarytoolNotarizer(),
    )


def build_run(
    config: MatrixConfig,
    *,
    workspace: Path,
    capabilities: CapabilitySet,
    ephemeral: Optional[StorageAdapter] = None,
    permanent: Optional[StorageAdapter] = None,
    max_workers: Optional[int] = None,
) -> ReleaseRun:
    evaluator = ConditionEvaluator()
    publisher = ArtifactPublisher(
        ephemeral=ephemeral or DirectoryStoreAdapter(workspace / "artifacts"),
        permanent=permanent,
        permanent_predicate=config.permanent_publish_predicate(),
        evaluator=evaluator,
    )
    pipeline = JobPipeline(
        config=config,
        capabilities=capabilities,
        policy=ErrorPolicy(config.release_predicate(), evaluator),
        publisher=publisher,
        workspace=workspace,
    )
    return ReleaseRun(config, pipeline, max_workers=max_workers, evaluator=evaluator)


__all__ = ["ReleaseRun", "RunReport", "build_run", "default_capabilities"]
