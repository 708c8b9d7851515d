from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from docsync.core.config import TierLimits
from docsync.core.errors import BlobNotFoundError
from docsync.domain.models import SyncConflict, SyncDocument, utc_now
from docsync.domain.results import ErrorKind, Fail, Ok, Result
from docsync.persistence.db import SessionFactory
from docsync.persistence.repos import conflicts as conflicts_repo
from docsync.services.audit import OP_CONFLICT, OP_RESOLVE, record_operation
from docsync.services.blobstore.base import BlobPair, BlobStore, StoredPair
from docsync.services.catalog import DocumentCatalog
from docsync.services.paths import conflict_copy_path
from docsync.services.quota import quota_details
from docsync.services.sidecar import canonical_json


logger = logging.getLogger(__name__)

RESOLUTION_LOCAL = "local"
RESOLUTION_REMOTE = "remote"
RESOLUTION_BOTH = "both"
RESOLUTIONS = (RESOLUTION_LOCAL, RESOLUTION_REMOTE, RESOLUTION_BOTH)

# Base version recorded when the proposer had never seen the document.
UNSEEN_VERSION = 0


@dataclass(frozen=True)
class RevisionPayload:
    version: int
    content: str
    sidecar: dict[str, Any]
    content_hash: str


@dataclass(frozen=True)
class ConflictDetail:
    conflict: SyncConflict
    local: RevisionPayload
    # None once the document's current blobs have been reclaimed.
    remote: RevisionPayload | None


@dataclass(frozen=True)
class Resolution:
    conflict: SyncConflict
    document: SyncDocument | None = None


class ConflictStore:
    """Preserves losing revisions and applies client-chosen resolutions.

    Blob reads and writes happen before any transaction is opened; the
    resolution flag and any catalog change commit together afterwards.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        blob_store: BlobStore,
        catalog: DocumentCatalog,
        time_provider: Callable[[], datetime] | None = None,
        max_copy_attempts: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._catalog = catalog
        self._time_provider = time_provider or utc_now
        self._max_copy_attempts = max_copy_attempts

    async def record(
        self,
        *,
        tenant_id: str,
        current: SyncDocument,
        base_version: int | None,
        content: bytes,
        sidecar: bytes,
    ) -> SyncConflict:
        local_version = base_version if base_version is not None else UNSEEN_VERSION
        preserved = await self._blob_store.preserve_conflict(
            tenant_id, current.id, local_version, content, sidecar
        )
        conflict = SyncConflict(
            id=uuid4().hex,
            document_id=current.id,
            tenant_id=tenant_id,
            path=current.path,
            local_version=local_version,
            remote_version=int(current.version),
            local_content_hash=preserved.content_hash,
            local_sidecar_hash=preserved.sidecar_hash,
            remote_content_hash=current.content_hash,
            local_blob_key=preserved.content_key,
            local_sidecar_key=preserved.sidecar_key,
            remote_blob_key=current.content_key,
            remote_sidecar_key=current.sidecar_key,
            local_size_bytes=preserved.size_bytes,
            created_at=self._time_provider(),
        )
        async with self._session_factory() as session:
            session.add(conflict)
            await record_operation(
                session=session,
                tenant_id=tenant_id,
                operation=OP_CONFLICT,
                document_id=current.id,
                path=current.path,
                size_bytes=preserved.size_bytes,
                metadata={
                    "conflict_id": conflict.id,
                    "local_version": local_version,
                    "remote_version": conflict.remote_version,
                },
                occurred_at=conflict.created_at,
            )
            await session.commit()
        logger.info(
            "conflict_recorded tenant_id=%s document_id=%s conflict_id=%s local_version=%s remote_version=%s",
            tenant_id,
            current.id,
            conflict.id,
            local_version,
            conflict.remote_version,
        )
        return conflict

    async def _load_local(self, conflict: SyncConflict) -> Result[BlobPair]:
        try:
            pair = await self._blob_store.get_pair(conflict.local_blob_key, conflict.local_sidecar_key)
        except BlobNotFoundError as exc:
            logger.error(
                "conflict_blob_missing tenant_id=%s conflict_id=%s key=%s",
                conflict.tenant_id,
                conflict.id,
                exc.key,
            )
            return Fail(
                ErrorKind.CORRUPT_CATALOG,
                "Preserved revision is missing from blob storage",
                {"conflict_id": conflict.id, "key": exc.key},
            )
        if pair.content_hash != conflict.local_content_hash:
            # Another conflict on the same base version overwrote the preserved slot.
            return Fail(
                ErrorKind.STALE,
                "Preserved revision was superseded by a later conflict on the same base version",
                {"conflict_id": conflict.id},
            )
        return Ok(pair)

    async def get(self, tenant_id: str, conflict_id: str) -> Result[ConflictDetail]:
        async with self._session_factory() as session:
            conflict = await conflicts_repo.get_conflict(session, tenant_id, conflict_id)
            document = None
            if conflict is not None:
                document = await self._catalog.get_by_id(session, tenant_id, conflict.document_id)
        if conflict is None:
            return Fail(ErrorKind.NOT_FOUND, "Conflict not found", {"conflict_id": conflict_id})

        local = await self._load_local(conflict)
        if isinstance(local, Fail):
            return local
        remote: RevisionPayload | None = None
        if document is not None:
            try:
                pair = await self._blob_store.get_pair(document.content_key, document.sidecar_key)
            except BlobNotFoundError:
                logger.warning(
                    "conflict_remote_missing tenant_id=%s conflict_id=%s document_id=%s",
                    tenant_id,
                    conflict_id,
                    document.id,
                )
            else:
                remote = RevisionPayload(
                    version=int(document.version),
                    content=pair.content,
                    sidecar=pair.sidecar,
                    content_hash=pair.content_hash,
                )
        return Ok(
            ConflictDetail(
                conflict=conflict,
                local=RevisionPayload(
                    version=conflict.local_version,
                    content=local.value.content,
                    sidecar=local.value.sidecar,
                    content_hash=local.value.content_hash,
                ),
                remote=remote,
            )
        )

    async def resolve(
        self,
        tenant_id: str,
        conflict_id: str,
        resolution: str,
        *,
        limits: TierLimits,
    ) -> Result[Resolution]:
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Unsupported resolution: {resolution}")

        async with self._session_factory() as session:
            conflict = await conflicts_repo.get_conflict(session, tenant_id, conflict_id)
            document = None
            if conflict is not None:
                document = await self._catalog.get_by_id(session, tenant_id, conflict.document_id)
        if conflict is None:
            return Fail(ErrorKind.NOT_FOUND, "Conflict not found", {"conflict_id": conflict_id})
        if conflict.resolved_at is not None:
            return _already_resolved(conflict)

        live_document = document if document is not None and document.deleted_at is None else None
        if resolution == RESOLUTION_REMOTE:
            return await self._finish(tenant_id, conflict_id, resolution)
        if resolution == RESOLUTION_LOCAL:
            if live_document is None:
                return Fail(
                    ErrorKind.STALE,
                    "The conflicted document no longer exists; resolve with 'remote'",
                    {"conflict_id": conflict_id, "document_id": conflict.document_id},
                )
            return await self._resolve_local(tenant_id, conflict, live_document, limits)
        base_path = live_document.path if live_document is not None else conflict.path
        return await self._resolve_both(tenant_id, conflict, base_path, limits)

    async def _resolve_local(
        self,
        tenant_id: str,
        conflict: SyncConflict,
        document: SyncDocument,
        limits: TierLimits,
    ) -> Result[Resolution]:
        local = await self._load_local(conflict)
        if isinstance(local, Fail):
            return local
        content = local.value.content.encode("utf-8")
        sidecar = canonical_json(local.value.sidecar)
        delta = len(content) + len(sidecar) - int(document.size_bytes or 0)

        # Read-only admission first so a certain denial never touches current blobs.
        async with self._session_factory() as session:
            decision = await self._catalog.ledger.admit(
                session, tenant_id=tenant_id, limits=limits, delta_bytes=delta, is_new_document=False
            )
        if not decision.allowed:
            return Fail(ErrorKind.QUOTA_EXCEEDED, "Storage limit exceeded", quota_details(decision))

        stored = await self._blob_store.put_document(tenant_id, document.id, content, sidecar)
        return await self._promote(
            stored, self._commit_local(tenant_id, conflict, document, stored, delta, limits)
        )

    async def _commit_local(
        self,
        tenant_id: str,
        conflict: SyncConflict,
        document: SyncDocument,
        stored: StoredPair,
        delta: int,
        limits: TierLimits,
    ) -> tuple[Result[Resolution], tuple[str, str] | None]:
        async with self._session_factory() as session:
            locked = await conflicts_repo.get_conflict(
                session, tenant_id, conflict.id, for_update=True
            )
            if locked is None or locked.resolved_at is not None:
                return _already_resolved(locked or conflict), None
            decision = await self._catalog.ledger.admit(
                session,
                tenant_id=tenant_id,
                limits=limits,
                delta_bytes=delta,
                is_new_document=False,
                lock=True,
            )
            if not decision.allowed:
                return Fail(ErrorKind.QUOTA_EXCEEDED, "Storage limit exceeded", quota_details(decision)), None
            outcome = await self._catalog.replace_current(
                session, tenant_id=tenant_id, document_id=document.id, stored=stored
            )
            if outcome is None or outcome.document is None:
                return (
                    Fail(
                        ErrorKind.STALE,
                        "The conflicted document was deleted during resolution",
                        {"conflict_id": conflict.id, "document_id": document.id},
                    ),
                    None,
                )
            self._mark(locked, RESOLUTION_LOCAL)
            await self._log_resolution(session, locked, outcome.document)
            await session.commit()
        return Ok(Resolution(conflict=locked, document=outcome.document)), outcome.replaced_keys

    async def _resolve_both(
        self,
        tenant_id: str,
        conflict: SyncConflict,
        base_path: str,
        limits: TierLimits,
    ) -> Result[Resolution]:
        local = await self._load_local(conflict)
        if isinstance(local, Fail):
            return local
        content = local.value.content.encode("utf-8")
        sidecar = canonical_json(local.value.sidecar)

        async with self._session_factory() as session:
            decision = await self._catalog.ledger.admit(
                session,
                tenant_id=tenant_id,
                limits=limits,
                delta_bytes=len(content) + len(sidecar),
                is_new_document=True,
            )
        if not decision.allowed:
            return Fail(ErrorKind.QUOTA_EXCEEDED, "Storage limit exceeded", quota_details(decision))

        copy_id = uuid4().hex
        stored = await self._blob_store.put_document(tenant_id, copy_id, content, sidecar)
        return await self._promote(
            stored, self._commit_copy(tenant_id, conflict, base_path, copy_id, stored, limits)
        )

    async def _commit_copy(
        self,
        tenant_id: str,
        conflict: SyncConflict,
        base_path: str,
        copy_id: str,
        stored: StoredPair,
        limits: TierLimits,
    ) -> tuple[Result[Resolution], tuple[str, str] | None]:
        async with self._session_factory() as session:
            locked = await conflicts_repo.get_conflict(
                session, tenant_id, conflict.id, for_update=True
            )
            if locked is None or locked.resolved_at is not None:
                return _already_resolved(locked or conflict), None
            copy_path = await self._free_copy_path(session, tenant_id, base_path)
            if copy_path is None:
                return (
                    Fail(
                        ErrorKind.PATH_IN_USE,
                        "No free path for the conflict copy",
                        {"conflict_id": conflict.id, "path": base_path},
                    ),
                    None,
                )
            outcome = await self._catalog.upsert_on_upload(
                session,
                tenant_id=tenant_id,
                document_id=copy_id,
                path=copy_path,
                stored=stored,
                base_version=None,
                limits=limits,
            )
            if outcome.status == "quota" and outcome.decision is not None:
                return (
                    Fail(
                        ErrorKind.QUOTA_EXCEEDED,
                        "Storage limit exceeded",
                        quota_details(outcome.decision),
                    ),
                    None,
                )
            if outcome.status != "applied":
                return (
                    Fail(
                        ErrorKind.STALE,
                        "Conflict copy could not be created; retry",
                        {"conflict_id": conflict.id, "path": copy_path},
                    ),
                    None,
                )
            self._mark(locked, RESOLUTION_BOTH)
            await self._log_resolution(session, locked, outcome.document)
            await session.commit()
        return Ok(Resolution(conflict=locked, document=outcome.document)), outcome.replaced_keys

    async def _promote(
        self,
        stored: StoredPair,
        commit: Awaitable[tuple[Result[Resolution], tuple[str, str] | None]],
    ) -> Result[Resolution]:
        # Staged blobs become reachable only through a committed catalog row.
        try:
            result, replaced_keys = await commit
        except Exception:
            await self._blob_store.discard_pair(stored.content_key, stored.sidecar_key)
            raise
        if isinstance(result, Fail):
            await self._blob_store.discard_pair(stored.content_key, stored.sidecar_key)
        elif replaced_keys is not None:
            await self._blob_store.discard_pair(*replaced_keys)
        return result

    async def _finish(self, tenant_id: str, conflict_id: str, resolution: str) -> Result[Resolution]:
        async with self._session_factory() as session:
            locked = await conflicts_repo.get_conflict(session, tenant_id, conflict_id, for_update=True)
            if locked is None:
                return Fail(ErrorKind.NOT_FOUND, "Conflict not found", {"conflict_id": conflict_id})
            if locked.resolved_at is not None:
                return _already_resolved(locked)
            self._mark(locked, resolution)
            await self._log_resolution(session, locked, None)
            await session.commit()
        return Ok(Resolution(conflict=locked))

    async def _free_copy_path(self, session: AsyncSession, tenant_id: str, base_path: str) -> str | None:
        for attempt in range(1, self._max_copy_attempts + 1):
            candidate = conflict_copy_path(base_path, attempt)
            if await self._catalog.get_by_path(session, tenant_id, candidate) is None:
                return candidate
        return None

    def _mark(self, conflict: SyncConflict, resolution: str) -> None:
        conflict.resolution = resolution
        conflict.resolved_at = self._time_provider()

    async def _log_resolution(
        self, session: AsyncSession, conflict: SyncConflict, document: SyncDocument | None
    ) -> None:
        await record_operation(
            session=session,
            tenant_id=conflict.tenant_id,
            operation=OP_RESOLVE,
            document_id=document.id if document is not None else conflict.document_id,
            path=document.path if document is not None else conflict.path,
            size_bytes=int(document.size_bytes or 0) if document is not None else 0,
            metadata={"conflict_id": conflict.id, "resolution": conflict.resolution},
            occurred_at=conflict.resolved_at,
        )


def _already_resolved(conflict: SyncConflict) -> Fail:
    return Fail(
        ErrorKind.ALREADY_RESOLVED,
        "Conflict already resolved",
        {
            "conflict_id": conflict.id,
            "resolution": conflict.resolution,
            "resolved_at": conflict.resolved_at.isoformat() if conflict.resolved_at else None,
        },
    )

