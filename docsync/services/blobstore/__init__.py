from __future__ import annotations

# Re-export blob store types and the startup-time backend selection.

from docsync.core.config import Settings
from docsync.core.errors import ConfigError
from docsync.persistence.db import SessionFactory
from docsync.services.blobstore.base import BlobInfo, BlobPair, BlobStore, StoredPair
from docsync.services.blobstore.local import LocalBlobStore
from docsync.services.blobstore.s3 import S3BlobStore


def build_blob_store(settings: Settings, session_factory: SessionFactory) -> BlobStore:
    # Resolve the backend once; nothing downstream branches on it.
    backend = settings.storage_backend.strip().lower()
    if backend == "remote":
        return S3BlobStore(
            bucket=settings.storage_bucket,
            endpoint_url=settings.storage_endpoint,
            region=settings.storage_region,
            access_key_id=settings.storage_access_key_id,
            secret_access_key=settings.storage_secret_access_key,
            timeout_s=settings.blob_io_timeout_s,
        )
    if backend == "local":
        return LocalBlobStore(session_factory, timeout_s=settings.blob_io_timeout_s)
    raise ConfigError(f"Unsupported storage_backend: {settings.storage_backend}")


__all__ = [
    "BlobInfo",
    "BlobPair",
    "BlobStore",
    "LocalBlobStore",
    "S3BlobStore",
    "StoredPair",
    "build_blob_store",
]
