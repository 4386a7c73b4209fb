"""Artifact naming and per-platform packaging conventions."""

from __future__ import annotations

import re
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from .config import BuildTarget, PlatformFamily
from .errors import ConfigurationError, PackagingFailure


_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def slugify(value: str) -> str:
    """Collapse characters that are unsafe in file names and job ids to ``-``."""

    return _UNSAFE_NAME_CHARS.sub("-", value).strip("-")


@dataclass(frozen=True)
class Artifact:
    name: str
    path: Path
    signed: bool
    platform: PlatformFamily
    suffix: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "path": str(self.path),
            "signed": self.signed,
            "platform": self.platform.value,
            "suffix": self.suffix,
        }


def render_suffix(target: BuildTarget, ref_name: str) -> str:
    """Return ``<platform>-<arch>[-<cpu-profile>]-<ref-name>`` for a target.

    The ref name is slugged so refs such as ``42/merge`` never introduce path
    separators into artifact names.
    """

    ref_name = slugify(ref_name)
    if target.suffix:
        try:
            return target.suffix.format(
                ref_name=ref_name,
                label=target.platform_label,
                arch=target.arch,
                profile=target.profile or "",
                target=target.target,
            )
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigurationError(f"Invalid suffix template '{target.suffix}': {exc}") from exc
    parts = [target.platform_label, target.arch]
    if target.profile:
        parts.append(target.profile)
    parts.append(ref_name)
    return "-".join(parts)


def artifact_name(binary_name: str, suffix: str, platform: PlatformFamily) -> str:
    name = f"{binary_name}-{suffix}"
    if platform is PlatformFamily.WINDOWS:
        name += ".exe"
    return name


def package_binary(
    binary: Path,
    *,
    binary_name: str,
    suffix: str,
    platform: PlatformFamily,
    destination: Path,
    signed: bool,
) -> Artifact:
    """Move a built binary into ``destination`` using the platform's convention.

    Linux ships the plain binary, Windows the renamed ``.exe`` and macOS a zip
    archive so the code signature survives the upload.
    """

    if not binary.is_file():
        raise PackagingFailure(f"Built binary not found: {binary}")

    name = artifact_name(binary_name, suffix, platform)
    try:
        destination.mkdir(parents=True, exist_ok=True)
        staged = destination / name
        shutil.move(str(binary), staged)
        if platform is PlatformFamily.MACOS:
            archive = destination / f"{name}.zip"
            _zip_preserving_mode(staged, archive)
            staged.unlink()
            staged = archive
    except OSError as exc:
        raise PackagingFailure(f"Failed to package {binary}: {exc}") from exc

    return Artifact(name=name, path=staged, signed=signed, platform=platform, suffix=suffix)


def _zip_preserving_mode(source: Path, archive: Path) -> None:
    info = zipfile.ZipInfo.from_file(source, arcname=source.name)
    info.compress_type = zipfile.ZIP_DEFLATED
    with zipfile.ZipFile(archive, "w") as bundle, source.open("rb") as handle:
        bundle.writestr(info, handle.read())


__all__ = ["Artifact", "artifact_name", "package_binary", "render_suffix", "slugify"]
