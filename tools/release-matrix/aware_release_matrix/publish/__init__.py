"""Artifact publishing to ephemeral and permanent stores."""

from .adapters import (
    CommandAdapter,
    DirectoryStoreAdapter,
    GitHubReleaseAssetsAdapter,
    NoOpAdapter,
    StorageAdapter,
    build_adapter,
)
from .models import PublishResult, UploadResult
from .publisher import ArtifactPublisher

__all__ = [
    "ArtifactPublisher",
    "CommandAdapter",
    "DirectoryStoreAdapter",
    "GitHubReleaseAssetsAdapter",
    "NoOpAdapter",
    "PublishResult",
    "StorageAdapter",
    "UploadResult",
    "build_adapter",
]
