from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from docsync.core.errors import BlobNotFoundError, SignedUrlUnsupportedError, StorageUnavailableError
from docsync.services.blobstore.base import BlobInfo, BlobStore


class FakeClock:
    # Deterministic time source shared by the coordinator, catalog and sweeper.
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryBlobStore(BlobStore):
    """Dict-backed blob store with switches for failure injection."""

    backend = "memory"

    def __init__(self, *, signing: bool = False) -> None:
        super().__init__(timeout_s=None)
        self.objects: dict[str, tuple[bytes, str, dict[str, str]]] = {}
        self.signing = signing
        self.unavailable = False
        self.fail_puts = False
        self.fail_deletes = False
        self.puts = 0
        # One-shot hook awaited before the next write lands; lets a test interleave another writer.
        self.before_put: Callable[[str], Awaitable[None]] | None = None

    def _check(self) -> None:
        if self.unavailable:
            raise StorageUnavailableError("memory blob store offline")

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        self._check()
        if self.fail_puts:
            raise StorageUnavailableError("put rejected")
        if self.before_put is not None:
            hook, self.before_put = self.before_put, None
            await hook(key)
        self.puts += 1
        self.objects[key] = (bytes(data), content_type, dict(metadata or {}))

    async def get(self, key: str) -> bytes:
        self._check()
        if key not in self.objects:
            raise BlobNotFoundError(key)
        return self.objects[key][0]

    async def head(self, key: str) -> BlobInfo:
        self._check()
        if key not in self.objects:
            raise BlobNotFoundError(key)
        data, content_type, metadata = self.objects[key]
        return BlobInfo(key=key, size=len(data), content_type=content_type, metadata=metadata)

    async def delete(self, key: str) -> None:
        self._check()
        if self.fail_deletes:
            raise StorageUnavailableError("delete rejected")
        self.objects.pop(key, None)

    async def list(self, prefix: str) -> list[BlobInfo]:
        self._check()
        return [
            BlobInfo(key=key, size=len(value[0]), content_type=value[1])
            for key, value in sorted(self.objects.items())
            if key.startswith(prefix)
        ]

    async def sign_url(self, key: str, *, expires_in: int) -> str:
        self._check()
        if not self.signing:
            raise SignedUrlUnsupportedError("memory store cannot sign")
        return f"https://blobs.test/{key}?expires={expires_in}"

    async def ping(self) -> bool:
        return not self.unavailable
