from __future__ import annotations

import json
from pathlib import Path
from types import MappingProxyType
from typing import List

import pytest

import aware_release_matrix.capabilities as capabilities
from aware_release_matrix.capabilities import (
    AptCrossToolchain,
    CapabilityResult,
    CapabilitySet,
    CargoBuild,
    CodesignSigner,
    NotarytoolNotarizer,
    SigntoolSigner,
    build_signing_profile,
    run_command,
)
from aware_release_matrix.config import PlatformFamily, SigningMode
from aware_release_matrix.errors import ConfigurationError
from aware_release_matrix.secrets import CredentialScope

from conftest import FakeBuilder, FakeNotarizer, FakeSigner, entry_for

MAC_CREDENTIALS = {
    "MACOS_CERTIFICATE": "Y2VydA==",
    "MACOS_CERTIFICATE_PASSWORD": "hunter2",
    "MACOS_IDENTITY": "Developer ID Application: Subspace",
    "MACOS_APPLE_ID": "ci@example.invalid",
    "MACOS_APP_PASSWORD": "app-secret",
    "MACOS_TEAM_ID": "TEAM1234",
}


def _scope(platform: PlatformFamily, values: dict) -> CredentialScope:
    return CredentialScope(platform=platform, values=MappingProxyType(values))


class _RecordingRunner:
    def __init__(self, results: List[CapabilityResult] | None = None) -> None:
        self.commands: List[List[str]] = []
        self.kwargs: List[dict] = []
        self.results = list(results or [])

    def __call__(self, command, **kwargs) -> CapabilityResult:
        self.commands.append(list(command))
        self.kwargs.append(kwargs)
        if self.results:
            return self.results.pop(0)
        return CapabilityResult(status="succeeded", logs=["ok"], details={"returncode": 0, "stdout": ""})


def test_run_command_captures_exit_status(tmp_path: Path) -> None:
    ok = run_command(["sh", "-c", "echo built"], cwd=tmp_path)
    failed = run_command(["sh", "-c", "echo secret-token >&2; exit 4"], redact=["secret-token"])
    missing = run_command(["definitely-not-a-real-binary-xyz"])

    assert ok.ok and "built" in ok.logs[-1]
    assert failed.details["returncode"] == 4
    assert "secret-token" not in " ".join(failed.logs)
    assert missing.details["error"] == "not-found"


def test_run_command_timeout() -> None:
    result = run_command(["sh", "-c", "sleep 5"], timeout=0.2)

    assert not result.ok
    assert result.details["error"] == "timeout"


def test_cargo_build_command_and_environment(config, tmp_path: Path) -> None:
    entry = entry_for(config, "x86_64-unknown-linux-gnu", "skylake")
    builder = CargoBuild(binary_name="subspace-cli", source_root=tmp_path, build_env=config.build_env)

    command = builder.command(entry)
    env = builder.environment(entry, tmp_path / "job")

    assert command[:2] == ["cargo", "build"]
    assert command[command.index("--target") + 1] == "x86_64-unknown-linux-gnu"
    assert command[command.index("--profile") + 1] == "production"
    assert env["RUSTFLAGS"] == "-C target-cpu=skylake"
    assert env["CARGO_INCREMENTAL"] == "0"
    assert env["CARGO_TARGET_DIR"] == str(tmp_path / "job" / "target")


def test_cargo_build_clears_inherited_rustflags(monkeypatch: pytest.MonkeyPatch, config, tmp_path: Path) -> None:
    monkeypatch.setenv("RUSTFLAGS", "-C target-cpu=skylake")
    builder = CargoBuild(binary_name="subspace-cli", source_root=tmp_path, build_env=config.build_env)

    env = builder.environment(entry_for(config, "aarch64-apple-darwin"), tmp_path / "job")

    assert env["RUSTFLAGS"] == ""


def test_cargo_build_reports_output_path(monkeypatch: pytest.MonkeyPatch, config, tmp_path: Path) -> None:
    monkeypatch.setattr(capabilities, "run_command", _RecordingRunner())
    entry = entry_for(config, "x86_64-pc-windows-msvc", "v2")

    result = CargoBuild(binary_name="subspace-cli", source_root=tmp_path).build(entry, tmp_path / "job")

    assert result.output == tmp_path / "job" / "target" / "x86_64-pc-windows-msvc" / "production" / "subspace-cli.exe"


def test_apt_toolchain_installs_once_per_family(monkeypatch: pytest.MonkeyPatch, config) -> None:
    runner = _RecordingRunner()
    monkeypatch.setattr(capabilities, "run_command", runner)
    toolchain = AptCrossToolchain(use_sudo=False)
    entry = entry_for(config, "aarch64-unknown-linux-gnu")

    first = toolchain.prepare(entry)
    second = toolchain.prepare(entry)

    assert first.ok and second.ok
    assert runner.commands[0] == ["apt-get", "update"]
    assert runner.commands[1][-3:] == ["g++-aarch64-linux-gnu", "gcc-aarch64-linux-gnu", "libc6-dev-arm64-cross"]
    assert len(runner.commands) == 2


def test_apt_toolchain_skips_native_targets(monkeypatch: pytest.MonkeyPatch, config) -> None:
    runner = _RecordingRunner()
    monkeypatch.setattr(capabilities, "run_command", runner)

    result = AptCrossToolchain().prepare(entry_for(config, "x86_64-unknown-linux-gnu", "v2"))

    assert result.ok
    assert runner.commands == []


def test_codesign_requires_credentials(tmp_path: Path) -> None:
    result = CodesignSigner().sign(tmp_path / "bin", tmp_path, _scope(PlatformFamily.MACOS, {}))

    assert not result.ok
    assert "MACOS_CERTIFICATE" in result.logs[0]


def test_codesign_runs_keychain_steps(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runner = _RecordingRunner()
    monkeypatch.setattr(capabilities, "run_command", runner)

    result = CodesignSigner().sign(tmp_path / "bin", tmp_path, _scope(PlatformFamily.MACOS, MAC_CREDENTIALS))

    assert result.ok
    assert (tmp_path / "signing" / "certificate.p12").read_bytes() == b"cert"
    keychain = str(tmp_path / "signing" / "build.keychain")
    assert runner.commands[0][:2] == ["security", "create-keychain"]
    assert runner.commands[-2][0] == "codesign"
    assert runner.commands[-2][runner.commands[-2].index("--keychain") + 1] == keychain
    assert runner.commands[-1] == ["security", "delete-keychain", keychain]
    assert not any("default-keychain" in command for command in runner.commands)
    assert all(kwargs["redact"] == ["hunter2"] for kwargs in runner.kwargs)


def test_codesign_stops_at_first_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runner = _RecordingRunner(
        [CapabilityResult(status="succeeded"), CapabilityResult(status="failed", logs=["no keychain"], details={"returncode": 1})]
    )
    monkeypatch.setattr(capabilities, "run_command", runner)

    result = CodesignSigner().sign(tmp_path / "bin", tmp_path, _scope(PlatformFamily.MACOS, MAC_CREDENTIALS))

    assert not result.ok
    assert len(runner.commands) == 3
    assert runner.commands[-1][:2] == ["security", "delete-keychain"]
    assert result.details["returncode"] == 1


def test_signtool_invocation(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runner = _RecordingRunner()
    monkeypatch.setattr(capabilities, "run_command", runner)
    credentials = _scope(
        PlatformFamily.WINDOWS,
        {"WINDOWS_CERTIFICATE": "cGZ4", "WINDOWS_CERTIFICATE_PASSWORD": "pw", "WINDOWS_CERTIFICATE_SHA": "ABC"},
    )

    result = SigntoolSigner().sign(tmp_path / "cli.exe", tmp_path, credentials)

    assert result.ok
    command = runner.commands[0]
    assert command[:2] == ["signtool", "sign"]
    assert command[command.index("/sha1") + 1] == "ABC"
    assert command[-1] == str(tmp_path / "cli.exe")


@pytest.mark.parametrize("verdict,ok", [("Accepted", True), ("Invalid", False), (None, False)])
def test_notarytool_verdicts(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, verdict, ok: bool) -> None:
    stdout = json.dumps({"id": "1", "status": verdict}) if verdict else "not json"
    runner = _RecordingRunner([CapabilityResult(status="succeeded", details={"returncode": 0, "stdout": stdout})])
    monkeypatch.setattr(capabilities, "run_command", runner)
    binary = tmp_path / "subspace-cli"
    binary.write_bytes(b"binary")

    result = NotarytoolNotarizer().notarize(binary, tmp_path, _scope(PlatformFamily.MACOS, MAC_CREDENTIALS), 30)

    assert result.ok is ok
    assert runner.commands[0][:3] == ["xcrun", "notarytool", "submit"]
    assert runner.kwargs[0]["timeout"] == 30
    assert "stdout" not in result.details


def test_signing_profiles() -> None:
    signer, notarizer = FakeSigner(), FakeNotarizer()

    assert not build_signing_profile(SigningMode.NONE).configured
    assert build_signing_profile(SigningMode.SIGN, signer=signer, notarizer=notarizer).notarizer is None
    assert build_signing_profile(SigningMode.SIGN_AND_NOTARIZE, signer=signer, notarizer=notarizer).notarizer is notarizer
    with pytest.raises(ConfigurationError):
        build_signing_profile(SigningMode.SIGN_AND_NOTARIZE, signer=signer)
    with pytest.raises(ConfigurationError):
        CapabilitySet(builder=FakeBuilder()).signing_profile(SigningMode.SIGN, PlatformFamily.WINDOWS)
