from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from docsync.core.config import Settings, TierLimits, get_settings, tier_limits
from docsync.core.errors import (
    BlobNotFoundError,
    BlobStoreError,
    SignedUrlUnsupportedError,
    StorageUnavailableError,
)
from docsync.domain.models import SyncConflict, SyncDocument, utc_now
from docsync.domain.results import ErrorKind, Fail, Ok, Result
from docsync.persistence.db import SessionFactory
from docsync.persistence.repos import conflicts as conflicts_repo
from docsync.services import telemetry
from docsync.services.audit import (
    OP_CONFLICT_READ,
    OP_DELETE,
    OP_DOWNLOAD,
    OP_RENAME,
    OP_RESOLVE,
    OP_SIGN_URL,
    OP_UPLOAD,
    record_operation,
)
from docsync.services.blobstore import BlobStore, build_blob_store
from docsync.services.blobstore.base import BlobPair, StoredPair
from docsync.services.catalog import DocumentCatalog
from docsync.services.conflicts import ConflictDetail, ConflictStore, Resolution
from docsync.services.cursors import build_list_cursor, parse_list_cursor
from docsync.services.paths import validate_path
from docsync.services.quota import QuotaLedger, UsageSnapshot, quota_details, usage_view
from docsync.services.sidecar import format_bytes, sanitize_sidecar


logger = logging.getLogger(__name__)

# A reader that races a committed overwrite finds its old blobs discarded; it rereads the row.
_SUPERSEDED_READ_ATTEMPTS = 3


@dataclass(frozen=True)
class DownloadedDocument:
    document: SyncDocument
    content: str
    sidecar: dict[str, Any]


@dataclass(frozen=True)
class SignedUrl:
    document: SyncDocument
    url: str
    expires_in: int


@dataclass(frozen=True)
class StatusView:
    documents: list[SyncDocument]
    conflicts: list[SyncConflict]
    usage: dict[str, Any]
    next_cursor: str | None
    storage_available: bool
    backend: str


@dataclass(frozen=True)
class _Proposal:
    path: str
    content: bytes
    sidecar: bytes
    size_bytes: int


def _storage_failure(exc: BlobStoreError) -> Fail:
    if isinstance(exc, StorageUnavailableError):
        return Fail(ErrorKind.STORAGE_UNAVAILABLE, "Storage service unavailable")
    return Fail(ErrorKind.STORAGE_UNAVAILABLE, "Storage request failed")


class SyncCoordinator:
    """Serves upload, download, rename, delete, resolve and listing for one deployment.

    Every step returns ``Ok`` or ``Fail``; blob I/O never happens while a
    catalog transaction is open.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        blob_store: BlobStore,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._time_provider = time_provider or utc_now
        self._session_factory = session_factory
        self._blob_store = blob_store
        self.ledger = QuotaLedger(time_provider=self._time_provider)
        self.catalog = DocumentCatalog(ledger=self.ledger, time_provider=self._time_provider)
        self.conflicts = ConflictStore(
            session_factory=session_factory,
            blob_store=blob_store,
            catalog=self.catalog,
            time_provider=self._time_provider,
        )

    @property
    def blob_store(self) -> BlobStore:
        return self._blob_store

    def limits_for(self, tier: str | None) -> TierLimits:
        return tier_limits(self._settings, tier)

    async def _log_failure(
        self,
        *,
        tenant_id: str,
        operation: str,
        failure: Fail,
        document_id: str | None = None,
        path: str | None = None,
        size_bytes: int = 0,
    ) -> Fail:
        telemetry.increment_counter(f"sync.{operation}.{failure.kind.value}")
        await record_operation(
            session_factory=self._session_factory,
            tenant_id=tenant_id,
            operation=operation,
            document_id=document_id,
            path=path,
            size_bytes=size_bytes,
            success=False,
            error_message=failure.message,
            metadata={"kind": failure.kind.value},
            occurred_at=self._time_provider(),
        )
        return failure

    def _prepare(self, raw_path: object, content: str | bytes, sidecar: object) -> _Proposal | Fail:
        checked = validate_path(
            raw_path,
            max_chars=self._settings.limits_path_max_chars,
            max_segment_chars=self._settings.limits_filename_max_chars,
        )
        if not checked.valid:
            return Fail(ErrorKind.INVALID_PATH, checked.reason or "Invalid path", {"path": raw_path})

        if isinstance(content, str):
            content_bytes = content.encode("utf-8")
        elif isinstance(content, (bytes, bytearray)):
            content_bytes = bytes(content)
            try:
                content_bytes.decode("utf-8")
            except UnicodeDecodeError:
                return Fail(ErrorKind.INVALID_CONTENT, "Content must be UTF-8 text")
        else:
            return Fail(ErrorKind.INVALID_CONTENT, "Content must be text")
        limit = self._settings.limits_content_max_bytes
        if len(content_bytes) > limit:
            return Fail(
                ErrorKind.PAYLOAD_TOO_LARGE,
                f"Content too large ({format_bytes(len(content_bytes))}, max {format_bytes(limit)})",
                {"size_bytes": len(content_bytes), "max_bytes": limit},
            )

        sanitized = sanitize_sidecar(sidecar, max_bytes=self._settings.limits_sidecar_max_bytes)
        if not sanitized.valid:
            return Fail(ErrorKind.INVALID_SIDECAR, sanitized.reason or "Invalid sidecar")
        return _Proposal(
            path=checked.canonical or "",
            content=content_bytes,
            sidecar=sanitized.serialized,
            size_bytes=len(content_bytes) + len(sanitized.serialized),
        )

    async def _remote_payload(self, document: SyncDocument) -> dict[str, Any] | None:
        try:
            pair = await self._blob_store.get_pair(document.content_key, document.sidecar_key)
        except BlobStoreError as exc:
            logger.warning(
                "conflict_remote_unavailable tenant_id=%s document_id=%s",
                document.tenant_id,
                document.id,
                exc_info=exc,
            )
            return None
        return {
            "content": pair.content,
            "sidecar": pair.sidecar,
            "version": int(document.version),
            "contentHash": pair.content_hash,
        }

    async def _conflict(
        self,
        *,
        tenant_id: str,
        current: SyncDocument,
        base_version: int | None,
        proposal: _Proposal,
    ) -> Fail:
        conflict = await self.conflicts.record(
            tenant_id=tenant_id,
            current=current,
            base_version=base_version,
            content=proposal.content,
            sidecar=proposal.sidecar,
        )
        telemetry.increment_counter("sync.upload.conflict")
        return Fail(
            ErrorKind.CONFLICT,
            "Conflict detected",
            {
                "conflictId": conflict.id,
                "documentId": current.id,
                "localVersion": conflict.local_version,
                "remoteVersion": conflict.remote_version,
                "remote": await self._remote_payload(current),
            },
        )

    async def upload(
        self,
        *,
        tenant_id: str,
        tier: str | None,
        path: object,
        content: str | bytes,
        sidecar: object,
        base_version: int | None = None,
    ) -> Result[SyncDocument]:
        prepared = self._prepare(path, content, sidecar)
        if isinstance(prepared, Fail):
            return await self._log_failure(
                tenant_id=tenant_id,
                operation=OP_UPLOAD,
                failure=prepared,
                path=path if isinstance(path, str) else None,
            )
        proposal = prepared
        limits = self.limits_for(tier)

        async with self._session_factory() as session:
            existing = await self.catalog.get_by_path(session, tenant_id, proposal.path)
            previous_size = int(existing.size_bytes or 0) if existing is not None else 0
            decision = await self.ledger.admit(
                session,
                tenant_id=tenant_id,
                limits=limits,
                delta_bytes=proposal.size_bytes - previous_size,
                is_new_document=existing is None,
            )
        if not decision.allowed:
            message = (
                f"Document limit exceeded ({decision.snapshot.document_count}/{limits.max_documents})"
                if decision.dimension == "documents"
                else "Storage limit exceeded"
            )
            return await self._log_failure(
                tenant_id=tenant_id,
                operation=OP_UPLOAD,
                failure=Fail(ErrorKind.QUOTA_EXCEEDED, message, quota_details(decision)),
                document_id=existing.id if existing is not None else None,
                path=proposal.path,
                size_bytes=proposal.size_bytes,
            )

        stored: StoredPair | None = None
        try:
            if existing is not None and base_version is not None and existing.version != base_version:
                # Known stale before any write; preserve without touching the current blobs.
                return await self._conflict(
                    tenant_id=tenant_id, current=existing, base_version=base_version, proposal=proposal
                )

            document_id = existing.id if existing is not None else uuid4().hex
            stored = await self._blob_store.put_document(
                tenant_id, document_id, proposal.content, proposal.sidecar
            )

            async with self._session_factory() as session:
                outcome = await self.catalog.upsert_on_upload(
                    session,
                    tenant_id=tenant_id,
                    document_id=document_id,
                    path=proposal.path,
                    stored=stored,
                    base_version=base_version,
                    limits=limits,
                )
                if outcome.status == "applied" and outcome.document is not None:
                    await record_operation(
                        session=session,
                        tenant_id=tenant_id,
                        operation=OP_UPLOAD,
                        document_id=document_id,
                        path=proposal.path,
                        size_bytes=proposal.size_bytes,
                        metadata={"version": outcome.document.version, "created": outcome.created},
                        occurred_at=self._time_provider(),
                    )
                    await session.commit()
            if outcome.status == "applied" and outcome.document is not None:
                if outcome.replaced_keys is not None:
                    await self._blob_store.discard_pair(*outcome.replaced_keys)
                telemetry.increment_counter("sync.upload.ok")
                return Ok(outcome.document)

            # The proposal lost; its staged blobs were never referenced by the catalog.
            await self._blob_store.discard_pair(stored.content_key, stored.sidecar_key)
            stored = None
            if outcome.status == "conflict" and outcome.current is not None:
                return await self._conflict(
                    tenant_id=tenant_id,
                    current=outcome.current,
                    base_version=base_version,
                    proposal=proposal,
                )
            if outcome.status == "quota" and outcome.decision is not None:
                failure = Fail(ErrorKind.QUOTA_EXCEEDED, "Storage limit exceeded", quota_details(outcome.decision))
            else:
                failure = Fail(
                    ErrorKind.STALE,
                    "Document changed while the upload was in flight; retry",
                    {"documentId": document_id},
                )
        except IntegrityError:
            # A concurrent create claimed the path between the read and the insert.
            if stored is not None:
                await self._blob_store.discard_pair(stored.content_key, stored.sidecar_key)
            failure = Fail(
                ErrorKind.STALE,
                "Path was claimed by a concurrent upload; retry",
                {"path": proposal.path},
            )
        except BlobStoreError as exc:
            logger.warning("sync_upload_storage_failed tenant_id=%s", tenant_id, exc_info=exc)
            if stored is not None:
                await self._blob_store.discard_pair(stored.content_key, stored.sidecar_key)
            failure = _storage_failure(exc)
        return await self._log_failure(
            tenant_id=tenant_id,
            operation=OP_UPLOAD,
            failure=failure,
            path=proposal.path,
            size_bytes=proposal.size_bytes,
        )

    async def _load_pair(self, document: SyncDocument) -> Result[BlobPair]:
        try:
            pair = await self._blob_store.get_pair(document.content_key, document.sidecar_key)
        except BlobNotFoundError as exc:
            logger.error(
                "corrupt_catalog tenant_id=%s document_id=%s version=%s content_key=%s sidecar_key=%s missing=%s",
                document.tenant_id,
                document.id,
                document.version,
                document.content_key,
                document.sidecar_key,
                exc.key,
            )
            return Fail(
                ErrorKind.CORRUPT_CATALOG,
                "Document content not found",
                {"documentId": document.id, "key": exc.key},
            )
        except BlobStoreError as exc:
            logger.warning(
                "sync_download_storage_failed tenant_id=%s document_id=%s",
                document.tenant_id,
                document.id,
                exc_info=exc,
            )
            return _storage_failure(exc)
        if pair.content_hash != document.content_hash:
            logger.error(
                "corrupt_catalog tenant_id=%s document_id=%s version=%s expected_hash=%s actual_hash=%s",
                document.tenant_id,
                document.id,
                document.version,
                document.content_hash,
                pair.content_hash,
            )
            return Fail(
                ErrorKind.CORRUPT_CATALOG,
                "Document content does not match the catalog",
                {"documentId": document.id},
            )
        return Ok(pair)

    async def download(self, *, tenant_id: str, document_id: str) -> Result[DownloadedDocument]:
        async with self._session_factory() as session:
            document = await self.catalog.get_by_id(session, tenant_id, document_id)
        if document is None or document.deleted_at is not None:
            return await self._log_failure(
                tenant_id=tenant_id,
                operation=OP_DOWNLOAD,
                failure=Fail(ErrorKind.NOT_FOUND, "Document not found", {"documentId": document_id}),
                document_id=document_id,
            )

        loaded = await self._load_pair(document)
        attempts = 1
        while (
            isinstance(loaded, Fail)
            and loaded.kind is ErrorKind.CORRUPT_CATALOG
            and attempts < _SUPERSEDED_READ_ATTEMPTS
        ):
            async with self._session_factory() as session:
                latest = await self.catalog.get_by_id(session, tenant_id, document_id)
            if latest is None or latest.deleted_at is not None or latest.content_key == document.content_key:
                break
            logger.info(
                "sync_download_superseded tenant_id=%s document_id=%s version=%s",
                tenant_id,
                document_id,
                latest.version,
            )
            document = latest
            loaded = await self._load_pair(document)
            attempts += 1
        if isinstance(loaded, Fail):
            return await self._log_failure(
                tenant_id=tenant_id,
                operation=OP_DOWNLOAD,
                failure=loaded,
                document_id=document.id,
                path=document.path,
            )
        await record_operation(
            session_factory=self._session_factory,
            tenant_id=tenant_id,
            operation=OP_DOWNLOAD,
            document_id=document.id,
            path=document.path,
            size_bytes=int(document.size_bytes or 0),
            occurred_at=self._time_provider(),
        )
        return Ok(DownloadedDocument(document=document, content=loaded.value.content, sidecar=loaded.value.sidecar))

    async def rename(self, *, tenant_id: str, document_id: str, path: object) -> Result[SyncDocument]:
        checked = validate_path(
            path,
            max_chars=self._settings.limits_path_max_chars,
            max_segment_chars=self._settings.limits_filename_max_chars,
        )
        if not checked.valid:
            return await self._log_failure(
                tenant_id=tenant_id,
                operation=OP_RENAME,
                failure=Fail(ErrorKind.INVALID_PATH, checked.reason or "Invalid path", {"path": path}),
                document_id=document_id,
            )
        new_path = checked.canonical or ""

        try:
            async with self._session_factory() as session:
                outcome = await self.catalog.rename(
                    session, tenant_id=tenant_id, document_id=document_id, new_path=new_path
                )
                if outcome.status in ("renamed", "unchanged") and outcome.document is not None:
                    if outcome.status == "renamed":
                        await record_operation(
                            session=session,
                            tenant_id=tenant_id,
                            operation=OP_RENAME,
                            document_id=document_id,
                            path=f"{outcome.old_path} -> {new_path}",
                            occurred_at=self._time_provider(),
                        )
                        await session.commit()
                    return Ok(outcome.document)
        except IntegrityError:
            # A concurrent create or rename claimed the target path before the flush.
            outcome = None

        if outcome is not None and outcome.status == "not_found":
            failure = Fail(ErrorKind.NOT_FOUND, "Document not found", {"documentId": document_id})
        else:
            failure = Fail(
                ErrorKind.PATH_IN_USE,
                "A document already exists at the target path",
                {"path": new_path},
            )
        return await self._log_failure(
            tenant_id=tenant_id,
            operation=OP_RENAME,
            failure=failure,
            document_id=document_id,
            path=new_path,
        )

    async def soft_delete(self, *, tenant_id: str, document_id: str) -> Result[SyncDocument]:
        async with self._session_factory() as session:
            document = await self.catalog.soft_delete(
                session, tenant_id=tenant_id, document_id=document_id
            )
            if document is not None:
                await record_operation(
                    session=session,
                    tenant_id=tenant_id,
                    operation=OP_DELETE,
                    document_id=document_id,
                    path=document.path,
                    occurred_at=document.deleted_at,
                )
                await session.commit()
        if document is None:
            return await self._log_failure(
                tenant_id=tenant_id,
                operation=OP_DELETE,
                failure=Fail(ErrorKind.NOT_FOUND, "Document not found", {"documentId": document_id}),
                document_id=document_id,
            )
        telemetry.increment_counter("sync.delete.ok")
        return Ok(document)

    async def resolve_conflict(
        self, *, tenant_id: str, tier: str | None, conflict_id: str, resolution: str
    ) -> Result[Resolution]:
        try:
            result = await self.conflicts.resolve(
                tenant_id, conflict_id, resolution, limits=self.limits_for(tier)
            )
        except BlobStoreError as exc:
            logger.warning("sync_resolve_storage_failed tenant_id=%s", tenant_id, exc_info=exc)
            result = _storage_failure(exc)
        if isinstance(result, Fail):
            return await self._log_failure(
                tenant_id=tenant_id,
                operation=OP_RESOLVE,
                failure=result,
                path=None,
            )
        telemetry.increment_counter(f"sync.resolve.{resolution}")
        return result

    async def get_conflict(self, *, tenant_id: str, conflict_id: str) -> Result[ConflictDetail]:
        try:
            result = await self.conflicts.get(tenant_id, conflict_id)
        except BlobStoreError as exc:
            logger.warning("sync_conflict_storage_failed tenant_id=%s", tenant_id, exc_info=exc)
            result = _storage_failure(exc)
        if isinstance(result, Fail):
            return await self._log_failure(
                tenant_id=tenant_id,
                operation=OP_CONFLICT_READ,
                failure=result,
            )
        return result

    async def usage_snapshot(self, tenant_id: str) -> UsageSnapshot:
        async with self._session_factory() as session:
            return await self.ledger.snapshot(session, tenant_id)

    async def usage(self, *, tenant_id: str, tier: str | None) -> Result[dict[str, Any]]:
        snapshot = await self.usage_snapshot(tenant_id)
        return Ok(usage_view(snapshot, self.limits_for(tier)))

    async def status(
        self,
        *,
        tenant_id: str,
        tier: str | None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Result[StatusView]:
        # Raises CursorError for tampered or foreign cursors.
        page_size = limit or self._settings.list_default_page_size
        page_size = max(1, min(page_size, self._settings.list_max_page_size))
        position = (
            parse_list_cursor(cursor, tenant_id=tenant_id, secret=self._settings.cursor_secret)
            if cursor
            else None
        )
        async with self._session_factory() as session:
            page = await self.catalog.list(session, tenant_id, limit=page_size, cursor=position)
            open_conflicts = await conflicts_repo.list_open_conflicts(session, tenant_id)
            snapshot = await self.ledger.snapshot(session, tenant_id)
        next_cursor = None
        if page.has_more and page.documents:
            last = page.documents[-1]
            next_cursor = build_list_cursor(
                tenant_id=tenant_id,
                updated_at=last.updated_at,
                document_id=last.id,
                secret=self._settings.cursor_secret,
            )
        return Ok(
            StatusView(
                documents=page.documents,
                conflicts=open_conflicts,
                usage=usage_view(snapshot, self.limits_for(tier)),
                next_cursor=next_cursor,
                storage_available=await self._blob_store.ping(),
                backend=self._blob_store.backend,
            )
        )

    async def signed_url(
        self, *, tenant_id: str, document_id: str, expires_in: int | None = None
    ) -> Result[SignedUrl]:
        async with self._session_factory() as session:
            document = await self.catalog.get_by_id(session, tenant_id, document_id)
        if document is None or document.deleted_at is not None:
            return await self._log_failure(
                tenant_id=tenant_id,
                operation=OP_SIGN_URL,
                failure=Fail(ErrorKind.NOT_FOUND, "Document not found", {"documentId": document_id}),
                document_id=document_id,
            )
        ttl = expires_in or self._settings.storage_signed_url_ttl_s
        try:
            url = await self._blob_store.signed_download_url(document.content_key, expires_in=ttl)
        except SignedUrlUnsupportedError as exc:
            failure = Fail(
                ErrorKind.SIGN_URL_UNSUPPORTED,
                str(exc) or "Signed URLs are not supported by this storage backend",
                {"backend": self._blob_store.backend},
            )
        except BlobStoreError as exc:
            logger.warning("sync_sign_url_storage_failed tenant_id=%s", tenant_id, exc_info=exc)
            failure = _storage_failure(exc)
        else:
            await record_operation(
                session_factory=self._session_factory,
                tenant_id=tenant_id,
                operation=OP_SIGN_URL,
                document_id=document.id,
                path=document.path,
                metadata={"expires_in": ttl},
                occurred_at=self._time_provider(),
            )
            return Ok(SignedUrl(document=document, url=url, expires_in=ttl))
        return await self._log_failure(
            tenant_id=tenant_id,
            operation=OP_SIGN_URL,
            failure=failure,
            document_id=document.id,
            path=document.path,
        )


_sync_coordinator: SyncCoordinator | None = None


def build_sync_coordinator(
    *,
    session_factory: SessionFactory,
    settings: Settings | None = None,
    blob_store: BlobStore | None = None,
    time_provider: Callable[[], datetime] | None = None,
) -> SyncCoordinator:
    settings = settings or get_settings()
    return SyncCoordinator(
        session_factory=session_factory,
        blob_store=blob_store or build_blob_store(settings, session_factory),
        settings=settings,
        time_provider=time_provider,
    )


def get_sync_coordinator() -> SyncCoordinator:
    # Cache the coordinator so the blob client and statement registry are built once.
    global _sync_coordinator
    if _sync_coordinator is None:
        from docsync.persistence.db import SessionLocal

        _sync_coordinator = build_sync_coordinator(session_factory=SessionLocal)
    return _sync_coordinator


def reset_sync_coordinator() -> None:
    # Reset cached services for deterministic tests.
    global _sync_coordinator
    _sync_coordinator = None
