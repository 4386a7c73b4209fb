from __future__ import annotations

import threading
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, List, Optional

import pytest

from aware_release_matrix.capabilities import CapabilityResult, CapabilitySet
from aware_release_matrix.config import MatrixConfig, PlatformFamily, default_config
from aware_release_matrix.context import TriggerContext
from aware_release_matrix.matrix import MatrixEntry, RunnerTable
from aware_release_matrix.packaging import render_suffix
from aware_release_matrix.pipeline import JobPipeline
from aware_release_matrix.policy import ErrorPolicy
from aware_release_matrix.publish import ArtifactPublisher, StorageAdapter, UploadResult
from aware_release_matrix.publish.adapters import DirectoryStoreAdapter
from aware_release_matrix.secrets import CredentialScope

EXTENDED_INPUT = "test-macos-and-windows"


@pytest.fixture()
def make_context() -> Callable[..., TriggerContext]:
    def factory(**overrides: object) -> TriggerContext:
        data: Dict[str, object] = {
            "event": "push",
            "ref_name": "main",
            "ref_kind": "branch",
            "repository_owner": "subspace",
            "inputs": {EXTENDED_INPUT: False},
        }
        data.update(overrides)
        return TriggerContext(**data)

    return factory


@pytest.fixture()
def config() -> MatrixConfig:
    return default_config()


def entry_for(config: MatrixConfig, target: str, profile: Optional[str] = None, ref_name: str = "main") -> MatrixEntry:
    for build_target in config.targets:
        if build_target.target == target and build_target.profile == profile:
            runner = RunnerTable(config.runner_pools).select("subspace", build_target.platform)
            return MatrixEntry(target=build_target, runner=tuple(runner), suffix=render_suffix(build_target, ref_name))
    raise LookupError(f"{target}/{profile} not declared")


class FakeBuilder:
    """Writes a stand-in binary where cargo would have put it."""

    def __init__(self, fail_targets: tuple[str, ...] = ()) -> None:
        self.fail_targets = fail_targets
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def build(self, entry: MatrixEntry, workdir: Path) -> CapabilityResult:
        with self._lock:
            self.calls.append(entry.job_id)
        if entry.job_id in self.fail_targets:
            return CapabilityResult.failed("error: could not compile", returncode=101)
        binary = workdir / "target" / entry.target.target / "production" / "subspace-cli"
        binary.parent.mkdir(parents=True, exist_ok=True)
        binary.write_bytes(b"\x7fELF fake binary")
        return CapabilityResult(status="succeeded", output=binary, logs=["Finished production"])


class FakeToolchain:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.prepared: List[str] = []

    def prepare(self, entry: MatrixEntry) -> CapabilityResult:
        self.prepared.append(entry.job_id)
        if not self.ok:
            return CapabilityResult.failed("apt-get install failed")
        return CapabilityResult(status="succeeded")


class FakeSigner:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.signed: List[str] = []

    def sign(self, binary: Path, workdir: Path, credentials: CredentialScope) -> CapabilityResult:
        self.signed.append(binary.name)
        if not self.ok:
            return CapabilityResult.failed("The specified item could not be found in the keychain.")
        return CapabilityResult(status="succeeded", output=binary)


class FakeNotarizer:
    def __init__(self, verdict: str = "Accepted") -> None:
        self.verdict = verdict
        self.submitted: List[str] = []

    def notarize(self, binary: Path, workdir: Path, credentials: CredentialScope, timeout: float) -> CapabilityResult:
        self.submitted.append(binary.name)
        if self.verdict != "Accepted":
            return CapabilityResult.failed(f"Notarization verdict: {self.verdict}", verdict=self.verdict)
        return CapabilityResult(status="succeeded", output=binary, details={"verdict": self.verdict})


class RecordingAdapter(StorageAdapter):
    def __init__(self, name: str = "recording", status: str = "succeeded") -> None:
        self.name = name
        self.status = status
        self.published: List[str] = []
        self._lock = threading.Lock()

    def publish(self, artifact, context) -> UploadResult:
        with self._lock:
            self.published.append(artifact.name)
        return UploadResult(adapter=self.name, status=self.status, logs=[f"{self.status}: {artifact.name}"])


class RaisingAdapter(StorageAdapter):
    """Release store whose client blows up mid-upload."""

    name = "exploding"

    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def publish(self, artifact, context) -> UploadResult:
        raise self.exc


def empty_credentials(platform: PlatformFamily) -> CredentialScope:
    return CredentialScope(platform=platform, values=MappingProxyType({}))


@pytest.fixture()
def make_pipeline(tmp_path: Path, config: MatrixConfig):
    def factory(
        *,
        builder: Optional[FakeBuilder] = None,
        toolchain: Optional[FakeToolchain] = None,
        mac_signer: Optional[FakeSigner] = None,
        windows_signer: Optional[FakeSigner] = None,
        notarizer: Optional[FakeNotarizer] = None,
        ephemeral: Optional[StorageAdapter] = None,
        permanent: Optional[StorageAdapter] = None,
    ) -> JobPipeline:
        capabilities = CapabilitySet(
            builder=builder or FakeBuilder(),
            toolchain=toolchain or FakeToolchain(),
            signers={
                PlatformFamily.MACOS: mac_signer or FakeSigner(),
                PlatformFamily.WINDOWS: windows_signer or FakeSigner(),
            },
            notarizer=notarizer or FakeNotarizer(),
        )
        publisher = ArtifactPublisher(
            ephemeral=ephemeral or DirectoryStoreAdapter(tmp_path / "artifacts"),
            permanent=permanent,
            permanent_predicate=config.permanent_publish_predicate(),
        )
        return JobPipeline(
            config=config,
            capabilities=capabilities,
            policy=ErrorPolicy(config.release_predicate()),
            publisher=publisher,
            workspace=tmp_path / "workspace",
            credentials=empty_credentials,
        )

    return factory
