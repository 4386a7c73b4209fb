"""Pydantic models describing the release build matrix."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .conditions import All, Any, Eq, Predicate, Truthy, parse_predicate
from .context import EventKind, RefKind
from .errors import ConfigurationError


class PlatformFamily(str, Enum):
    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"


class SigningMode(str, Enum):
    NONE = "none"
    SIGN = "sign"
    SIGN_AND_NOTARIZE = "sign-and-notarize"


class BuildTarget(BaseModel):
    """One declared build: platform family, target triple and codegen profile."""

    platform: PlatformFamily
    target: str = Field(..., description="Compiler target triple, e.g. x86_64-unknown-linux-gnu.")
    profile: Optional[str] = Field(default=None, description="CPU/codegen profile name (v2, skylake, ...).")
    label: Optional[str] = Field(default=None, description="Platform label used in artifact names.")
    build_profile: str = Field(default="production", description="Compiler build profile.")
    output_path: str = Field(default="target/{target}/{build_profile}", description="Build output directory template.")
    suffix: Optional[str] = Field(default=None, description="Artifact suffix template; {ref_name} is substituted.")
    rustflags: str = ""
    cross_compile: bool = False
    cross_packages: List[str] = Field(default_factory=list)
    signing: Optional[SigningMode] = Field(default=None, description="Overrides the platform signing mode.")

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def arch(self) -> str:
        return self.target.split("-", 1)[0]

    @property
    def platform_label(self) -> str:
        return self.label or self.platform.value

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.platform.value, self.target, self.profile or "")

    def resolved_output_path(self) -> str:
        return self.output_path.format(target=self.target, build_profile=self.build_profile)


class DispatchInput(BaseModel):
    description: Optional[str] = None
    default: bool = False

    model_config = ConfigDict(extra="forbid")


class MatrixConfig(BaseModel):
    """Full release-matrix configuration: targets, gating predicates and sinks."""

    binary_name: str
    canonical_owner: str
    primary_branch: str = "main"
    extended_input: Optional[str] = Field(
        default="test-macos-and-windows",
        description="Dispatch input that requests the extended OS set.",
    )
    extended_platforms: List[PlatformFamily] = Field(
        default_factory=lambda: [PlatformFamily.MACOS, PlatformFamily.WINDOWS]
    )
    signing: Dict[PlatformFamily, SigningMode] = Field(
        default_factory=lambda: {
            PlatformFamily.MACOS: SigningMode.SIGN_AND_NOTARIZE,
            PlatformFamily.WINDOWS: SigningMode.SIGN,
        }
    )
    runner_pools: Dict[str, Dict[PlatformFamily, List[str]]] = Field(default_factory=dict)
    dispatch_inputs: Dict[str, DispatchInput] = Field(default_factory=dict)
    build_env: Dict[str, str] = Field(default_factory=dict)
    build_args: List[str] = Field(default_factory=lambda: ["--locked", "-Z", "build-std"])
    notarization_timeout: float = Field(default=3600.0, gt=0)
    targets: List[BuildTarget] = Field(default_factory=list)
    exclude: List[Predicate] = Field(default_factory=list)
    run_scope: Optional[Predicate] = None
    release: Optional[Predicate] = None
    permanent_publish: Optional[Predicate] = None
    triggers: List[Predicate] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    @field_validator("run_scope", "release", "permanent_publish", mode="before")
    @classmethod
    def _parse_optional_predicate(cls, value: object) -> Optional[Predicate]:
        if value is None:
            return None
        return parse_predicate(value)

    @field_validator("exclude", "triggers", mode="before")
    @classmethod
    def _parse_predicate_list(cls, value: object) -> List[Predicate]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("expected a list of predicates")
        return [parse_predicate(item) for item in value]

    def declared_inputs(self) -> Dict[str, bool]:
        inputs = {name: spec.default for name, spec in self.dispatch_inputs.items()}
        if self.extended_input and self.extended_input not in inputs:
            inputs[self.extended_input] = False
        return inputs

    def run_scope_predicate(self) -> Predicate:
        if self.run_scope is not None:
            return self.run_scope
        on_primary = Eq("ref_kind", RefKind.BRANCH) & Eq("ref_name", self.primary_branch)
        if self.extended_input:
            return Truthy(f"inputs.{self.extended_input}") | on_primary
        return on_primary

    def release_predicate(self) -> Predicate:
        if self.release is not None:
            return self.release
        return All(
            (
                Eq("repository_owner", self.canonical_owner),
                Eq("event", EventKind.PUSH),
                Eq("ref_kind", RefKind.TAG),
            )
        )

    def permanent_publish_predicate(self) -> Predicate:
        if self.permanent_publish is not None:
            return self.permanent_publish
        return Eq("event", EventKind.PUSH) & Eq("ref_kind", RefKind.TAG)

    def trigger_predicate(self) -> Predicate:
        if self.triggers:
            return Any(tuple(self.triggers))
        return Any(
            (
                Eq("event", EventKind.PUSH) & Eq("ref_kind", RefKind.TAG),
                All((Eq("event", EventKind.PUSH), Eq("ref_kind", RefKind.BRANCH), Eq("ref_name", self.primary_branch))),
                Eq("event", EventKind.PULL_REQUEST),
                Eq("event", EventKind.WORKFLOW_DISPATCH),
                Eq("event", EventKind.MERGE_GROUP),
            )
        )

    def signing_mode_for(self, target: BuildTarget) -> SigningMode:
        if target.signing is not None:
            return target.signing
        return self.signing.get(target.platform, SigningMode.NONE)


def load_config(path: str | Path) -> MatrixConfig:
    """Load a matrix configuration from a YAML or JSON file."""

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Matrix configuration not found: {config_path}")
    text = config_path.read_text(encoding="utf-8")
    try:
        if config_path.suffix == ".json":
            payload = json.loads(text)
        else:
            payload = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Unable to parse {config_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Matrix configuration at {config_path} must be a mapping.")
    try:
        return MatrixConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid matrix configuration at {config_path}: {exc}") from exc


_SELF_HOSTED = {
    PlatformFamily.LINUX: ["self-hosted", "ubuntu-20.04-x86-64"],
    PlatformFamily.MACOS: ["self-hosted", "macos-12-arm64"],
    PlatformFamily.WINDOWS: ["self-hosted", "windows-server-2022-x86-64"],
}

_HOSTED = {
    PlatformFamily.LINUX: ["ubuntu-20.04"],
    PlatformFamily.MACOS: ["macos-12"],
    PlatformFamily.WINDOWS: ["windows-2022"],
}

_AARCH64_CROSS_PACKAGES = ["g++-aarch64-linux-gnu", "gcc-aarch64-linux-gnu", "libc6-dev-arm64-cross"]


def default_config() -> MatrixConfig:
    """Built-in release matrix for the subspace-cli executables."""

    linux, macos, windows = PlatformFamily.LINUX, PlatformFamily.MACOS, PlatformFamily.WINDOWS
    targets = [
        BuildTarget(
            platform=linux,
            target="x86_64-unknown-linux-gnu",
            profile="v2",
            label="ubuntu",
            suffix="ubuntu-x86_64-v2-{ref_name}",
            rustflags="-C target-cpu=x86-64-v2",
        ),
        BuildTarget(
            platform=linux,
            target="x86_64-unknown-linux-gnu",
            profile="skylake",
            label="ubuntu",
            suffix="ubuntu-x86_64-skylake-{ref_name}",
            rustflags="-C target-cpu=skylake",
        ),
        BuildTarget(
            platform=linux,
            target="aarch64-unknown-linux-gnu",
            label="ubuntu",
            build_profile="aarch64linux",
            suffix="ubuntu-aarch64-{ref_name}",
            rustflags="-C linker=aarch64-linux-gnu-gcc",
            cross_compile=True,
            cross_packages=list(_AARCH64_CROSS_PACKAGES),
        ),
        BuildTarget(
            platform=macos,
            target="x86_64-apple-darwin",
            suffix="macos-x86_64-{ref_name}",
        ),
        BuildTarget(
            platform=macos,
            target="aarch64-apple-darwin",
            suffix="macos-aarch64-{ref_name}",
        ),
        BuildTarget(
            platform=windows,
            target="x86_64-pc-windows-msvc",
            profile="v2",
            suffix="windows-x86_64-v2-{ref_name}",
            rustflags="-C target-cpu=x86-64-v2",
        ),
        BuildTarget(
            platform=windows,
            target="x86_64-pc-windows-msvc",
            profile="skylake",
            suffix="windows-x86_64-skylake-{ref_name}",
            rustflags="-C target-cpu=skylake",
        ),
    ]
    return MatrixConfig(
        binary_name="subspace-cli",
        canonical_owner="subspace",
        primary_branch="main",
        runner_pools={"subspace": dict(_SELF_HOSTED), "default": dict(_HOSTED)},
        dispatch_inputs={
            "test-macos-and-windows": DispatchInput(description="run macOS and Windows builds", default=False),
        },
        build_env={"CARGO_INCREMENTAL": "0"},
        targets=targets,
    )


__all__ = [
    "BuildTarget",
    "DispatchInput",
    "MatrixConfig",
    "PlatformFamily",
    "SigningMode",
    "default_config",
    "load_config",
]
