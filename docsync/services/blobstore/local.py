from __future__ import annotations

from sqlalchemy import delete, select

from docsync.core.errors import BlobNotFoundError, SignedUrlUnsupportedError
from docsync.domain.models import SyncBlob, SyncConflictBlob, utc_now
from docsync.persistence.db import SessionFactory
from docsync.services.blobstore.base import BlobInfo, BlobStore
from docsync.services.blobstore.keys import BlobAddress, conflict_key, document_key, parse_key


def _row_key(row: SyncBlob | SyncConflictBlob) -> str:
    if isinstance(row, SyncConflictBlob):
        return conflict_key(row.tenant_id, row.document_id, row.version, row.role)
    return document_key(row.tenant_id, row.document_id, row.role, row.revision)


def _prefix_tenant(prefix: str) -> str | None:
    # "tenants/<tid>/..." lets the query stay tenant-scoped.
    parts = prefix.split("/")
    if len(parts) >= 3 and parts[0] == "tenants" and parts[1]:
        return parts[1]
    return None


class LocalBlobStore(BlobStore):
    """Database-backed fallback used when no object store is configured.

    Runs on its own short sessions so it is never part of a catalog transaction.
    """

    backend = "local"

    def __init__(self, session_factory: SessionFactory, *, timeout_s: float | None = None) -> None:
        super().__init__(timeout_s=timeout_s)
        self._session_factory = session_factory

    def _locate(self, address: BlobAddress):
        if address.version is None:
            return select(SyncBlob).where(
                SyncBlob.document_id == address.document_id,
                SyncBlob.tenant_id == address.tenant_id,
                SyncBlob.revision == (address.revision or ""),
                SyncBlob.role == address.role,
            )
        return select(SyncConflictBlob).where(
            SyncConflictBlob.tenant_id == address.tenant_id,
            SyncConflictBlob.document_id == address.document_id,
            SyncConflictBlob.version == address.version,
            SyncConflictBlob.role == address.role,
        )

    async def _load(self, key: str) -> SyncBlob | SyncConflictBlob:
        address = parse_key(key)
        async with self._session_factory() as session:
            row = (await session.execute(self._locate(address))).scalar_one_or_none()
        if row is None:
            raise BlobNotFoundError(key)
        return row

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        address = parse_key(key)
        if address.version is None:
            row: SyncBlob | SyncConflictBlob = SyncBlob(
                document_id=address.document_id,
                tenant_id=address.tenant_id,
                revision=address.revision or "",
                role=address.role,
                data=data,
                content_type=content_type,
                metadata_json=metadata or {},
                updated_at=utc_now(),
            )
        else:
            row = SyncConflictBlob(
                tenant_id=address.tenant_id,
                document_id=address.document_id,
                version=address.version,
                role=address.role,
                data=data,
                content_type=content_type,
                metadata_json=metadata or {},
                updated_at=utc_now(),
            )
        async with self._session_factory() as session:
            await session.merge(row)
            await session.commit()

    async def get(self, key: str) -> bytes:
        row = await self._load(key)
        return bytes(row.data)

    async def head(self, key: str) -> BlobInfo:
        row = await self._load(key)
        return BlobInfo(
            key=key,
            size=len(row.data),
            content_type=row.content_type,
            metadata=dict(row.metadata_json or {}),
        )

    async def delete(self, key: str) -> None:
        address = parse_key(key)
        if address.version is None:
            stmt = delete(SyncBlob).where(
                SyncBlob.document_id == address.document_id,
                SyncBlob.tenant_id == address.tenant_id,
                SyncBlob.revision == (address.revision or ""),
                SyncBlob.role == address.role,
            )
        else:
            stmt = delete(SyncConflictBlob).where(
                SyncConflictBlob.tenant_id == address.tenant_id,
                SyncConflictBlob.document_id == address.document_id,
                SyncConflictBlob.version == address.version,
                SyncConflictBlob.role == address.role,
            )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def list(self, prefix: str) -> list[BlobInfo]:
        tenant_id = _prefix_tenant(prefix)
        current = select(SyncBlob)
        preserved = select(SyncConflictBlob)
        if tenant_id is not None:
            current = current.where(SyncBlob.tenant_id == tenant_id)
            preserved = preserved.where(SyncConflictBlob.tenant_id == tenant_id)
        async with self._session_factory() as session:
            rows = list((await session.execute(current)).scalars().all())
            rows.extend((await session.execute(preserved)).scalars().all())
        items = [
            BlobInfo(key=_row_key(row), size=len(row.data), content_type=row.content_type)
            for row in rows
        ]
        return sorted(
            (item for item in items if item.key.startswith(prefix)), key=lambda item: item.key
        )

    async def sign_url(self, key: str, *, expires_in: int) -> str:
        raise SignedUrlUnsupportedError("The local blob backend cannot issue signed URLs")
