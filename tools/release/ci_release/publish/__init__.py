"""Upload transports for release artifacts."""

from .adapters import (
    CommandAdapter,
    GitHubReleasesAdapter,
    NoOpAdapter,
    StorageAdapter,
    UploadError,
    build_adapter,
)
from .models import UploadRequest, UploadResult

__all__ = [
    "CommandAdapter",
    "GitHubReleasesAdapter",
    "NoOpAdapter",
    "StorageAdapter",
    "UploadError",
    "UploadRequest",
    "UploadResult",
    "build_adapter",
]
