"""Data models used during artifact publishing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..packaging import Artifact


@dataclass(slots=True)
class UploadResult:
    adapter: str
    status: str
    url: Optional[str] = None
    details: Dict[str, object] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in ("succeeded", "skipped")

    def to_dict(self) -> Dict[str, object]:
        return {
            "adapter": self.adapter,
            "status": self.status,
            "url": self.url,
            "details": self.details,
            "logs": self.logs,
        }


@dataclass(slots=True)
class PublishResult:
    """Outcome of both sinks; the two uploads are independent."""

    artifact: Artifact
    ephemeral: UploadResult
    permanent: Optional[UploadResult] = None

    @property
    def permanent_attempted(self) -> bool:
        return self.permanent is not None

    @property
    def permanent_failed(self) -> bool:
        return self.permanent is not None and not self.permanent.ok

    def to_dict(self) -> Dict[str, object]:
        return {
            "artifact": self.artifact.to_dict(),
            "ephemeral": self.ephemeral.to_dict(),
            "permanent": self.permanent.to_dict() if self.permanent else None,
        }
