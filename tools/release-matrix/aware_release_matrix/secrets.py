"""Signing credential resolution.

Credentials are registered as :class:`SecretSpec` entries scoped to one
platform family and resolved through prioritized resolvers (process
environment first, then any ``.env`` files registered with :func:`use_dotenv`).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Protocol

from dotenv import dotenv_values

from .config import PlatformFamily


@dataclass(frozen=True)
class SecretSpec:
    name: str
    description: str = ""
    scopes: tuple[str, ...] = ()


class SecretResolver(Protocol):
    def resolve(self, spec: SecretSpec) -> Optional[str]:  # pragma: no cover - interface
        ...

    def describe(self) -> dict[str, object]:  # pragma: no cover - optional hook
        return {}


@dataclass(frozen=True)
class SecretAttempt:
    resolver: str
    source: str
    success: bool
    details: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class SecretResolutionInfo:
    name: str
    value: Optional[str]
    resolver: Optional[str]
    source: Optional[str]
    attempts: List[SecretAttempt]


@dataclass
class _RegisteredResolver:
    priority: int
    resolver: SecretResolver
    name: str
    source: str
    details: dict[str, object]


_secret_specs: dict[str, SecretSpec] = {}
_resolvers: List[_RegisteredResolver] = []


def register_secret(spec: SecretSpec) -> None:
    _secret_specs.setdefault(spec.name, spec)


def register_resolver(
    resolver: SecretResolver,
    priority: int = 0,
    *,
    name: Optional[str] = None,
    source: Optional[str] = None,
    details: Optional[dict[str, object]] = None,
) -> None:
    entry = _RegisteredResolver(
        priority=priority,
        resolver=resolver,
        name=name or resolver.__class__.__name__,
        source=source or (name or resolver.__class__.__name__),
        details=dict(details or {}),
    )
    _resolvers.append(entry)
    _resolvers.sort(key=lambda item: item.priority, reverse=True)


class EnvResolver:
    """Resolve secrets from process environment variables."""

    def resolve(self, spec: SecretSpec) -> Optional[str]:
        value = os.getenv(spec.name)
        return value if value else None

    def describe(self) -> dict[str, object]:
        return {"type": "env"}


class DotEnvResolver:
    """Resolve secrets from a ``.env`` file without exporting them."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._values: Optional[Dict[str, Optional[str]]] = None

    def resolve(self, spec: SecretSpec) -> Optional[str]:
        if self._values is None:
            self._values = dict(dotenv_values(self.path)) if self.path.exists() else {}
        value = self._values.get(spec.name)
        return value if value else None

    def describe(self) -> dict[str, object]:
        return {"type": "dotenv", "path": str(self.path), "exists": self.path.exists()}


register_resolver(EnvResolver(), priority=0, name="env", source="env")


def use_dotenv(path: str | Path, *, priority: int = -10) -> None:
    resolver = DotEnvResolver(Path(path))
    register_resolver(
        resolver,
        priority=priority,
        name=f"dotenv:{resolver.path}",
        source="dotenv",
        details={"path": str(resolver.path)},
    )


def resolve_secret(name: str) -> Optional[str]:
    return resolve_secret_info(name).value


def resolve_secret_info(name: str) -> SecretResolutionInfo:
    spec = _secret_specs.get(name, SecretSpec(name=name))
    attempts: List[SecretAttempt] = []

    for entry in _resolvers:
        value = entry.resolver.resolve(spec)
        details = {**entry.details, **entry.resolver.describe()}
        attempts.append(SecretAttempt(resolver=entry.name, source=entry.source, success=bool(value), details=details))
        if value:
            return SecretResolutionInfo(
                name=spec.name,
                value=value,
                resolver=entry.name,
                source=entry.source,
                attempts=attempts,
            )

    return SecretResolutionInfo(name=spec.name, value=None, resolver=None, source=None, attempts=attempts)


def list_secrets(scope: Optional[str] = None) -> List[SecretSpec]:
    specs = list(_secret_specs.values())
    if scope is None:
        return specs
    return [spec for spec in specs if scope in spec.scopes]


PLATFORM_CREDENTIALS: Dict[PlatformFamily, tuple[SecretSpec, ...]] = {
    PlatformFamily.MACOS: (
        SecretSpec("MACOS_CERTIFICATE", "Base64-encoded .p12 signing certificate", ("macos",)),
        SecretSpec("MACOS_CERTIFICATE_PASSWORD", "Password for the .p12 certificate", ("macos",)),
        SecretSpec("MACOS_IDENTITY", "codesign identity", ("macos",)),
        SecretSpec("MACOS_APPLE_ID", "Apple ID used for notarization", ("macos",)),
        SecretSpec("MACOS_APP_PASSWORD", "App-specific password for notarization", ("macos",)),
        SecretSpec("MACOS_TEAM_ID", "Developer team id for notarization", ("macos",)),
        SecretSpec("MACOS_BUNDLE_ID", "Bundle identifier", ("macos",)),
    ),
    PlatformFamily.WINDOWS: (
        SecretSpec("WINDOWS_CERTIFICATE", "Base64-encoded .pfx signing certificate", ("windows",)),
        SecretSpec("WINDOWS_CERTIFICATE_PASSWORD", "Password for the .pfx certificate", ("windows",)),
        SecretSpec("WINDOWS_CERTIFICATE_SHA", "SHA1 thumbprint of the certificate", ("windows",)),
    ),
}

for _specs in PLATFORM_CREDENTIALS.values():
    for _spec in _specs:
        register_secret(_spec)


@dataclass(frozen=True)
class CredentialScope:
    """Read-only view of one platform family's signing credentials."""

    platform: PlatformFamily
    values: Mapping[str, Optional[str]]

    @classmethod
    def for_platform(cls, platform: PlatformFamily) -> "CredentialScope":
        resolved = {spec.name: resolve_secret(spec.name) for spec in PLATFORM_CREDENTIALS.get(platform, ())}
        return cls(platform=platform, values=MappingProxyType(resolved))

    def missing(self) -> List[str]:
        return sorted(name for name, value in self.values.items() if not value)

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)


__all__ = [
    "CredentialScope",
    "DotEnvResolver",
    "EnvResolver",
    "PLATFORM_CREDENTIALS",
    "SecretAttempt",
    "SecretResolutionInfo",
    "SecretSpec",
    "list_secrets",
    "register_resolver",
    "register_secret",
    "resolve_secret",
    "resolve_secret_info",
    "use_dotenv",
]
