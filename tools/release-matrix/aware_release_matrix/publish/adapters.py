"""Storage adapters used during publish."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import requests
from requests import Session
from requests.exceptions import RequestException

from ..context import TriggerContext
from ..packaging import Artifact
from ..secrets import SecretSpec, register_secret, resolve_secret_info
from .models import UploadResult


class StorageAdapter(ABC):
    name: str

    @abstractmethod
    def publish(self, artifact: Artifact, context: TriggerContext) -> UploadResult:
        ...


class NoOpAdapter(StorageAdapter):
    name = "noop"

    def publish(self, artifact: Artifact, context: TriggerContext) -> UploadResult:
        return UploadResult(
            adapter=self.name,
            status="skipped",
            logs=["NoOp adapter selected; skipping upload.", f"Artifact ready at {artifact.path}"],
        )


class DirectoryStoreAdapter(StorageAdapter):
    """Run-scoped artifact store: one ``executables-<suffix>`` folder per job."""

    name = "directory"

    def __init__(self, root: Path, *, prefix: str = "executables") -> None:
        self.root = root
        self.prefix = prefix

    def publish(self, artifact: Artifact, context: TriggerContext) -> UploadResult:
        if not artifact.path.is_file():
            return UploadResult(
                adapter=self.name,
                status="failed",
                logs=[f"No files were found at {artifact.path}; nothing to upload."],
            )
        target_dir = self.root / f"{self.prefix}-{artifact.suffix}"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            stored = Path(shutil.copy2(artifact.path, target_dir / artifact.path.name))
        except OSError as exc:
            return UploadResult(adapter=self.name, status="failed", logs=[f"Upload to {target_dir} failed: {exc}"])
        return UploadResult(
            adapter=self.name,
            status="succeeded",
            url=stored.as_uri(),
            details={"path": str(stored)},
            logs=[f"Stored {artifact.path.name} in {target_dir}"],
        )


class CommandAdapter(StorageAdapter):
    name = "command"

    def __init__(self, command: str, env: Optional[Dict[str, str]] = None) -> None:
        self.command = command
        self.env = env or {}

    def publish(self, artifact: Artifact, context: TriggerContext) -> UploadResult:
        cmd = self._render_command(artifact, context)
        logs = [f"Executing upload command: {cmd}"]
        proc = subprocess.run(
            cmd,
            shell=True,
            check=False,
            capture_output=True,
            text=True,
            env={**os.environ, **self.env, **_build_env(artifact, context)},
        )
        if proc.stdout:
            logs.append(proc.stdout.strip())
        if proc.stderr:
            logs.append(proc.stderr.strip())
        status = "succeeded" if proc.returncode == 0 else "failed"
        return UploadResult(
            adapter=self.name,
            status=status,
            logs=logs,
            details={"returncode": proc.returncode},
        )

    def _render_command(self, artifact: Artifact, context: TriggerContext) -> str:
        replacements = {
            "{artifact}": shlex.quote(str(artifact.path)),
            "{name}": shlex.quote(artifact.name),
            "{suffix}": shlex.quote(artifact.suffix),
            "{ref_name}": shlex.quote(context.ref_name),
        }
        command = self.command
        for placeholder, value in replacements.items():
            command = command.replace(placeholder, value)
        return command


def _build_env(artifact: Artifact, context: TriggerContext) -> Dict[str, str]:
    return {
        "RELEASE_MATRIX_ARTIFACT": str(artifact.path),
        "RELEASE_MATRIX_ARTIFACT_NAME": artifact.name,
        "RELEASE_MATRIX_SUFFIX": artifact.suffix,
        "RELEASE_MATRIX_REF_NAME": context.ref_name,
        "RELEASE_MATRIX_SIGNED": "true" if artifact.signed else "false",
    }


class GitHubReleaseAssetsAdapter(StorageAdapter):
    """Uploads the artifact as an asset of the release tagged ``ref_name``."""

    name = "github"

    def __init__(
        self,
        repo: str,
        *,
        token_env: str = "GITHUB_TOKEN",
        github_api: str = "https://api.github.com",
        session: Optional[Session] = None,
        timeout: int = 60,
    ) -> None:
        self.repo = repo
        self.token_env = token_env
        self.github_api = github_api.rstrip("/")
        self.session = session
        self.timeout = timeout
        register_secret(SecretSpec(name=token_env, description=f"Token for release assets on {repo}"))

    def publish(self, artifact: Artifact, context: TriggerContext) -> UploadResult:
        info = resolve_secret_info(self.token_env)
        if not info.value:
            checked = ", ".join(attempt.source for attempt in info.attempts) or "none"
            return UploadResult(
                adapter=self.name,
                status="failed",
                logs=[f"GitHub token environment variable '{self.token_env}' is not set (checked: {checked})."],
            )

        session = self.session or requests.Session()
        headers = {"Authorization": f"Bearer {info.value}", "Accept": "application/vnd.github+json"}
        tag = context.ref_name
        logs = [f"Uploading {artifact.path.name} to GitHub release {self.repo}@{tag}."]
        try:
            release = session.get(
                f"{self.github_api}/repos/{self.repo}/releases/tags/{tag}",
                headers=headers,
                timeout=self.timeout,
            )
            if release.status_code != 200:
                logs.append(f"Release lookup returned {release.status_code}: {release.text or release.reason}")
                return UploadResult(adapter=self.name, status="failed", logs=logs, details={"status_code": release.status_code})
            upload_url = str(release.json()["upload_url"]).split("{", 1)[0]
            with artifact.path.open("rb") as handle:
                response = session.post(
                    upload_url,
                    params={"name": artifact.path.name},
                    headers={**headers, "Content-Type": "application/octet-stream"},
                    data=handle,
                    timeout=self.timeout,
                )
        except (RequestException, KeyError, ValueError, OSError) as exc:
            logs.append(f"Release asset upload failed: {exc}")
            return UploadResult(adapter=self.name, status="failed", logs=logs)

        if response.status_code != 201:
            logs.append(f"Asset upload returned {response.status_code}: {response.text or response.reason}")
            return UploadResult(adapter=self.name, status="failed", logs=logs, details={"status_code": response.status_code})

        try:
            payload = response.json()
        except ValueError as exc:
            logs.append(f"Asset upload response was not valid JSON: {exc}")
            return UploadResult(adapter=self.name, status="failed", logs=logs, details={"status_code": response.status_code})
        if not isinstance(payload, dict):
            payload = {}
        return UploadResult(
            adapter=self.name,
            status="succeeded",
            url=payload.get("browser_download_url"),
            logs=logs,
            details={"status_code": response.status_code, "asset_id": payload.get("id")},
        )


def build_adapter(name: str, *, options: Optional[Dict[str, object]] = None) -> StorageAdapter:
    opts = options or {}
    lowered = (name or "noop").lower()
    if lowered in ("noop", "none"):
        return NoOpAdapter()
    if lowered in ("dir", "directory"):
        root = opts.get("root")
        if not root:
            raise ValueError("Directory adapter requires root=<path>")
        return DirectoryStoreAdapter(Path(str(root)))
    if lowered in ("cmd", "command"):
        command = opts.get("command")
        if not command:
            raise ValueError("Command adapter requires command=<shell command>")
        env = {key[len("env.") :]: str(value) for key, value in opts.items() if key.startswith("env.")}
        return CommandAdapter(command=str(command), env=env)
    if lowered in ("github", "gh"):
        repo = opts.get("repo")
        if not repo:
            raise ValueError("GitHub adapter requires repo=owner/name")
        return GitHubReleaseAssetsAdapter(
            repo=str(repo),
            token_env=str(opts.get("token-env", "GITHUB_TOKEN")),
            github_api=str(opts.get("github-api", "https://api.github.com")),
        )
    raise ValueError(f"Unknown publish adapter '{name}'")
