"""External capabilities invoked by the job pipeline.

Every capability is a blocking call that ends in a :class:`CapabilityResult`.
The command-backed implementations shell out to the real tools (cargo,
apt-get, codesign, signtool, notarytool) and capture their output as logs.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import subprocess
import threading
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .config import PlatformFamily, SigningMode
from .errors import ConfigurationError
from .matrix import MatrixEntry
from .secrets import CredentialScope

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CapabilityResult:
    status: str
    output: Optional[Path] = None
    logs: List[str] = field(default_factory=list)
    details: Dict[str, object] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def failed(cls, message: str, **details: object) -> "CapabilityResult":
        return cls(status="failed", logs=[message], details=dict(details))


class BuildCapability(Protocol):
    def build(self, entry: MatrixEntry, workdir: Path) -> CapabilityResult:
        ...


class ToolchainSetup(Protocol):
    def prepare(self, entry: MatrixEntry) -> CapabilityResult:
        ...


class SigningCapability(Protocol):
    def sign(self, binary: Path, workdir: Path, credentials: CredentialScope) -> CapabilityResult:
        ...


class NotarizationCapability(Protocol):
    def notarize(self, binary: Path, workdir: Path, credentials: CredentialScope, timeout: float) -> CapabilityResult:
        ...


@dataclass(frozen=True)
class SigningProfile:
    """Signing variant for one target: none, sign-only, or sign-and-notarize."""

    mode: SigningMode
    signer: Optional[SigningCapability] = None
    notarizer: Optional[NotarizationCapability] = None

    @property
    def configured(self) -> bool:
        return self.mode is not SigningMode.NONE


def build_signing_profile(
    mode: SigningMode,
    *,
    signer: Optional[SigningCapability] = None,
    notarizer: Optional[NotarizationCapability] = None,
) -> SigningProfile:
    if mode is SigningMode.NONE:
        return SigningProfile(mode=mode)
    if signer is None:
        raise ConfigurationError(f"Signing mode '{mode.value}' requires a signing capability.")
    if mode is SigningMode.SIGN_AND_NOTARIZE and notarizer is None:
        raise ConfigurationError("Signing mode 'sign-and-notarize' requires a notarization capability.")
    return SigningProfile(mode=mode, signer=signer, notarizer=notarizer if mode is SigningMode.SIGN_AND_NOTARIZE else None)


@dataclass
class CapabilitySet:
    builder: BuildCapability
    toolchain: Optional[ToolchainSetup] = None
    signers: Dict[PlatformFamily, SigningCapability] = field(default_factory=dict)
    notarizer: Optional[NotarizationCapability] = None

    def signing_profile(self, mode: SigningMode, platform: PlatformFamily) -> SigningProfile:
        return build_signing_profile(mode, signer=self.signers.get(platform), notarizer=self.notarizer)


def run_command(
    command: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    redact: Iterable[Optional[str]] = (),
) -> CapabilityResult:
    """Run one external command and fold its outcome into a result."""

    hidden = [value for value in redact if value]
    logs = [f"Executing: {_redact(' '.join(command), hidden)}"]
    try:
        proc = subprocess.run(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        logs.append(f"Command not found: {exc.filename or command[0]}")
        return CapabilityResult(status="failed", logs=logs, details={"error": "not-found"})
    except subprocess.TimeoutExpired:
        logs.append(f"Command timed out after {timeout} seconds.")
        return CapabilityResult(status="failed", logs=logs, details={"error": "timeout", "timeout": timeout})

    if proc.stdout:
        logs.append(_redact(proc.stdout.strip(), hidden))
    if proc.stderr:
        logs.append(_redact(proc.stderr.strip(), hidden))
    status = "succeeded" if proc.returncode == 0 else "failed"
    return CapabilityResult(
        status=status,
        logs=logs,
        details={"returncode": proc.returncode, "stdout": proc.stdout},
    )


def _redact(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        text = text.replace(secret, "***")
    return text


def _merge(target: CapabilityResult, step: CapabilityResult) -> bool:
    target.logs.extend(step.logs)
    if not step.ok:
        target.status = "failed"
        target.details.update({key: value for key, value in step.details.items() if key != "stdout"})
        return False
    return True


class CargoBuild:
    """Builds one matrix entry with cargo inside the job's working directory."""

    def __init__(
        self,
        *,
        binary_name: str,
        source_root: Path,
        build_args: Sequence[str] = ("--locked", "-Z", "build-std"),
        build_env: Optional[Mapping[str, str]] = None,
        cargo: str = "cargo",
    ) -> None:
        self.binary_name = binary_name
        self.source_root = source_root
        self.build_args = list(build_args)
        self.build_env = dict(build_env or {})
        self.cargo = cargo

    def command(self, entry: MatrixEntry) -> List[str]:
        target = entry.target
        return [
            self.cargo,
            "build",
            *self.build_args,
            "--target",
            target.target,
            "--profile",
            target.build_profile,
            "--bin",
            self.binary_name,
        ]

    def environment(self, entry: MatrixEntry, workdir: Path) -> Dict[str, str]:
        env = {**os.environ, **self.build_env, "CARGO_TARGET_DIR": str(workdir / "target")}
        # never inherit RUSTFLAGS from the calling shell
        env["RUSTFLAGS"] = entry.target.rustflags
        return env

    def build(self, entry: MatrixEntry, workdir: Path) -> CapabilityResult:
        result = run_command(self.command(entry), cwd=self.source_root, env=self.environment(entry, workdir))
        if not result.ok:
            return result
        binary = self.binary_name + (".exe" if entry.platform is PlatformFamily.WINDOWS else "")
        result.output = workdir / entry.target.resolved_output_path() / binary
        return result


class AptCrossToolchain:
    """Installs cross-compilation packages once per platform family."""

    def __init__(self, *, use_sudo: bool = True) -> None:
        self.use_sudo = use_sudo
        self._lock = threading.Lock()
        self._prepared: Dict[PlatformFamily, CapabilityResult] = {}

    def prepare(self, entry: MatrixEntry) -> CapabilityResult:
        packages = entry.target.cross_packages
        if not entry.target.cross_compile or not packages:
            return CapabilityResult(status="succeeded", logs=["No cross-compile prerequisites."])
        with self._lock:
            cached = self._prepared.get(entry.platform)
            if cached is not None:
                return cached
            prefix = ["sudo"] if self.use_sudo else []
            result = CapabilityResult(status="succeeded")
            if _merge(result, run_command([*prefix, "apt-get", "update"])):
                _merge(
                    result,
                    run_command([*prefix, "apt-get", "install", "-y", "--no-install-recommends", *packages]),
                )
            self._prepared[entry.platform] = result
            return result


def _decode_certificate(encoded: str, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(base64.b64decode(encoded, validate=False))


class CodesignSigner:
    """Imports the certificate into a job-local keychain and runs codesign."""

    REQUIRED = ("MACOS_CERTIFICATE", "MACOS_CERTIFICATE_PASSWORD", "MACOS_IDENTITY")

    def __init__(self, *, entitlements: Optional[Path] = None) -> None:
        self.entitlements = entitlements

    def sign(self, binary: Path, workdir: Path, credentials: CredentialScope) -> CapabilityResult:
        missing = [name for name in self.REQUIRED if not credentials.get(name)]
        if missing:
            return CapabilityResult.failed(f"Missing signing credentials: {', '.join(missing)}", missing=missing)

        password = credentials.get("MACOS_CERTIFICATE_PASSWORD") or ""
        identity = credentials.get("MACOS_IDENTITY") or ""
        certificate = workdir / "signing" / "certificate.p12"
        keychain = str(workdir / "signing" / "build.keychain")
        try:
            _decode_certificate(credentials.get("MACOS_CERTIFICATE") or "", certificate)
        except (binascii.Error, ValueError) as exc:
            return CapabilityResult.failed(f"Unable to decode MACOS_CERTIFICATE: {exc}")

        codesign = ["codesign", "--force", "--options=runtime"]
        if self.entitlements:
            codesign += ["--entitlements", str(self.entitlements)]
        codesign += ["--keychain", keychain, "-s", identity, "--timestamp", str(binary)]

        steps = [
            ["security", "create-keychain", "-p", password, keychain],
            ["security", "unlock-keychain", "-p", password, keychain],
            ["security", "import", str(certificate), "-k", keychain, "-P", password, "-T", "/usr/bin/codesign"],
            ["security", "set-key-partition-list", "-S", "apple-tool:,apple:,codesign:", "-s", "-k", password, keychain],
            codesign,
        ]
        result = CapabilityResult(status="succeeded", output=binary)
        try:
            for step in steps:
                if not _merge(result, run_command(step, redact=[password])):
                    break
        finally:
            cleanup = run_command(["security", "delete-keychain", keychain], redact=[password])
            result.logs.extend(cleanup.logs)
        return result


class SigntoolSigner:
    """Signs a Windows executable with signtool and a decoded .pfx certificate."""

    REQUIRED = ("WINDOWS_CERTIFICATE", "WINDOWS_CERTIFICATE_PASSWORD", "WINDOWS_CERTIFICATE_SHA")

    def __init__(self, *, timestamp_url: str = "http://timestamp.digicert.com", signtool: str = "signtool") -> None:
        self.timestamp_url = timestamp_url
        self.signtool = signtool

    def sign(self, binary: Path, workdir: Path, credentials: CredentialScope) -> CapabilityResult:
        missing = [name for name in self.REQUIRED if not credentials.get(name)]
        if missing:
            return CapabilityResult.failed(f"Missing signing credentials: {', '.join(missing)}", missing=missing)

        password = credentials.get("WINDOWS_CERTIFICATE_PASSWORD") or ""
        certificate = workdir / "signing" / "certificate.pfx"
        try:
            _decode_certificate(credentials.get("WINDOWS_CERTIFICATE") or "", certificate)
        except (binascii.Error, ValueError) as exc:
            return CapabilityResult.failed(f"Unable to decode WINDOWS_CERTIFICATE: {exc}")

        command = [
            self.signtool,
            "sign",
            "/f",
            str(certificate),
            "/p",
            password,
            "/sha1",
            credentials.get("WINDOWS_CERTIFICATE_SHA") or "",
            "/fd",
            "sha256",
            "/tr",
            self.timestamp_url,
            "/td",
            "sha256",
            str(binary),
        ]
        result = run_command(command, redact=[password])
        result.output = binary
        return result


class NotarytoolNotarizer:
    """Submits a zipped binary to Apple's notary service and waits for a verdict."""

    REQUIRED = ("MACOS_APPLE_ID", "MACOS_APP_PASSWORD", "MACOS_TEAM_ID")

    def notarize(self, binary: Path, workdir: Path, credentials: CredentialScope, timeout: float) -> CapabilityResult:
        missing = [name for name in self.REQUIRED if not credentials.get(name)]
        if missing:
            return CapabilityResult.failed(f"Missing notarization credentials: {', '.join(missing)}", missing=missing)

        submission = workdir / "notarization" / f"{binary.name}.zip"
        submission.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(submission, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.write(binary, arcname=binary.name)

        password = credentials.get("MACOS_APP_PASSWORD") or ""
        command = [
            "xcrun",
            "notarytool",
            "submit",
            str(submission),
            "--apple-id",
            credentials.get("MACOS_APPLE_ID") or "",
            "--password",
            password,
            "--team-id",
            credentials.get("MACOS_TEAM_ID") or "",
            "--wait",
            "--output-format",
            "json",
        ]
        result = run_command(command, timeout=timeout, redact=[password])
        stdout = str(result.details.pop("stdout", "") or "")
        if not result.ok:
            return result

        verdict = _parse_notary_status(stdout)
        result.details["verdict"] = verdict
        if verdict != "Accepted":
            result.status = "failed"
            result.logs.append(f"Notarization verdict: {verdict or 'unknown'}")
        result.output = submission
        return result


def _parse_notary_status(stdout: str) -> Optional[str]:
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError:
        return None
    status = payload.get("status") if isinstance(payload, dict) else None
    return str(status) if status else None


__all__ = [
    "AptCrossToolchain",
    "BuildCapability",
    "CapabilityResult",
    "CapabilitySet",
    "CargoBuild",
    "CodesignSigner",
    "NotarizationCapability",
    "NotarytoolNotarizer",
    "SigningCapability",
    "SigningProfile",
    "SigntoolSigner",
    "ToolchainSetup",
    "build_signing_profile",
    "run_command",
]
