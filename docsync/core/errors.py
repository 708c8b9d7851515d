from __future__ import annotations


class DocsyncError(Exception):
    """Base error for docsync."""


class ConfigError(DocsyncError):
    """Missing or invalid service configuration."""


class BlobStoreError(DocsyncError):
    """Blob backend request failure."""


class BlobNotFoundError(BlobStoreError):
    """Requested blob key does not exist."""

    def __init__(self, key: str) -> None:
        super().__init__(f"blob not found: {key}")
        self.key = key


class SignedUrlUnsupportedError(BlobStoreError):
    """The configured blob backend cannot mint signed URLs."""


class StorageUnavailableError(BlobStoreError):
    """Blob backend unreachable or timed out; callers may retry with backoff."""
