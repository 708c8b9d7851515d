from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, field
import json
import logging
import time
from typing import Any, Awaitable, TypeVar
from uuid import uuid4

from docsync.core.errors import BlobStoreError, StorageUnavailableError
from docsync.services.blobstore.keys import (
    ROLE_CONTENT,
    ROLE_SIDECAR,
    conflict_key,
    document_key,
    mime_for_role,
)
from docsync.services.hashing import content_hash
from docsync.services.telemetry import record_blob_call


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BlobInfo:
    key: str
    size: int
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredPair:
    # Locators and fingerprints of a content+sidecar pair written together.
    content_key: str
    sidecar_key: str
    content_hash: str
    sidecar_hash: str
    size_bytes: int


@dataclass(frozen=True)
class BlobPair:
    content: str
    sidecar: dict[str, Any]
    content_hash: str
    sidecar_hash: str


class BlobStore(ABC):
    """Opaque key/value blob backend plus the document-shaped helpers built on it.

    Subclasses implement the primitive capabilities; the pair helpers apply the
    per-request deadline and key layout so callers never branch on the backend.
    """

    backend: str = "abstract"

    def __init__(self, *, timeout_s: float | None = None) -> None:
        self._timeout_s = timeout_s

    @abstractmethod
    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the blob bytes or raise BlobNotFoundError."""

    @abstractmethod
    async def head(self, key: str) -> BlobInfo:
        """Return blob metadata or raise BlobNotFoundError."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a blob; deleting a missing key is not an error."""

    @abstractmethod
    async def list(self, prefix: str) -> list[BlobInfo]: ...

    @abstractmethod
    async def sign_url(self, key: str, *, expires_in: int) -> str: ...

    async def ping(self) -> bool:
        return True

    async def _deadline(self, operation: str, awaitable: Awaitable[T]) -> T:
        started = time.monotonic()
        success = False
        try:
            if self._timeout_s is None or self._timeout_s <= 0:
                result = await awaitable
            else:
                result = await asyncio.wait_for(awaitable, timeout=self._timeout_s)
            success = True
            return result
        except asyncio.TimeoutError as exc:
            raise StorageUnavailableError(
                f"{self.backend} blob {operation} exceeded {self._timeout_s}s deadline"
            ) from exc
        finally:
            record_blob_call(
                backend=self.backend,
                operation=operation,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )

    async def _put_pair(
        self,
        *,
        tenant_id: str,
        document_id: str,
        content_key: str,
        sidecar_key: str,
        content: bytes,
        sidecar: bytes,
    ) -> StoredPair:
        content_digest = content_hash(content)
        sidecar_digest = content_hash(sidecar)
        base_metadata = {"tenant-id": tenant_id, "document-id": document_id}
        await self._deadline(
            "put",
            self.put(
                content_key,
                content,
                content_type=mime_for_role(ROLE_CONTENT),
                metadata={**base_metadata, "content-hash": content_digest},
            )
        )
        await self._deadline(
            "put",
            self.put(
                sidecar_key,
                sidecar,
                content_type=mime_for_role(ROLE_SIDECAR),
                metadata={**base_metadata, "sidecar-hash": sidecar_digest},
            )
        )
        return StoredPair(
            content_key=content_key,
            sidecar_key=sidecar_key,
            content_hash=content_digest,
            sidecar_hash=sidecar_digest,
            size_bytes=len(content) + len(sidecar),
        )

    async def put_document(
        self, tenant_id: str, document_id: str, content: bytes, sidecar: bytes
    ) -> StoredPair:
        # Every write lands under a fresh revision segment; nothing a reader can
        # reach through the catalog is overwritten until a commit points at it.
        revision = uuid4().hex
        content_key = document_key(tenant_id, document_id, ROLE_CONTENT, revision)
        sidecar_key = document_key(tenant_id, document_id, ROLE_SIDECAR, revision)
        try:
            return await self._put_pair(
                tenant_id=tenant_id,
                document_id=document_id,
                content_key=content_key,
                sidecar_key=sidecar_key,
                content=content,
                sidecar=sidecar,
            )
        except BlobStoreError:
            await self.discard_pair(content_key, sidecar_key)
            raise

    async def preserve_conflict(
        self,
        tenant_id: str,
        document_id: str,
        version: int,
        content: bytes,
        sidecar: bytes,
    ) -> StoredPair:
        return await self._put_pair(
            tenant_id=tenant_id,
            document_id=document_id,
            content_key=conflict_key(tenant_id, document_id, version, ROLE_CONTENT),
            sidecar_key=conflict_key(tenant_id, document_id, version, ROLE_SIDECAR),
            content=content,
            sidecar=sidecar,
        )

    async def get_pair(self, content_key: str, sidecar_key: str) -> BlobPair:
        # Raises BlobNotFoundError when either half is missing.
        content = await self._deadline("get", self.get(content_key))
        sidecar = await self._deadline("get", self.get(sidecar_key))
        return BlobPair(
            content=content.decode("utf-8"),
            sidecar=json.loads(sidecar.decode("utf-8")),
            content_hash=content_hash(content),
            sidecar_hash=content_hash(sidecar),
        )

    async def delete_pair(self, content_key: str, sidecar_key: str) -> None:
        await self._deadline("delete", self.delete(content_key))
        await self._deadline("delete", self.delete(sidecar_key))

    async def discard_pair(self, content_key: str, sidecar_key: str) -> bool:
        # Best-effort removal of a staged or superseded pair. A failure leaves an
        # unreferenced orphan for the sweeper.
        try:
            await self.delete_pair(content_key, sidecar_key)
        except BlobStoreError as exc:
            logger.warning(
                "blob_discard_failed backend=%s content_key=%s error=%s",
                self.backend,
                content_key,
                exc,
            )
            return False
        return True

    async def signed_download_url(self, content_key: str, *, expires_in: int) -> str:
        return await self._deadline("sign_url", self.sign_url(content_key, expires_in=expires_in))
