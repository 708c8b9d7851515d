from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable, Literal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.core.config import TierLimits
from docsync.domain.models import SyncDocument, utc_now
from docsync.persistence.guards import tenant_predicate
from docsync.persistence.repos import documents as documents_repo
from docsync.services.blobstore.base import StoredPair
from docsync.services.cursors import ListCursor, after_cursor
from docsync.services.quota import QuotaDecision, QuotaLedger


logger = logging.getLogger(__name__)

UpsertStatus = Literal["applied", "conflict", "stale", "quota"]
RenameStatus = Literal["renamed", "unchanged", "not_found", "path_in_use"]


@dataclass(frozen=True)
class UpsertResult:
    status: UpsertStatus
    document: SyncDocument | None = None
    # Row the proposal lost against; set only for conflicts.
    current: SyncDocument | None = None
    size_delta: int = 0
    created: bool = False
    decision: QuotaDecision | None = None
    # Blob locators the applied write superseded; the caller discards them after commit.
    replaced_keys: tuple[str, str] | None = None


@dataclass(frozen=True)
class RenameResult:
    status: RenameStatus
    document: SyncDocument | None = None
    old_path: str | None = None


@dataclass(frozen=True)
class DocumentPage:
    documents: list[SyncDocument]
    has_more: bool


class DocumentCatalog:
    """Authoritative document metadata plus the ledger writes that mirror it.

    Every mutator runs on the caller's session so that catalog and ledger
    changes share one transaction. No blob I/O happens here.
    """

    def __init__(
        self,
        *,
        ledger: QuotaLedger,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._ledger = ledger
        self._time_provider = time_provider or utc_now
        self._stmts = documents_repo.CatalogStatements.build()

    @property
    def ledger(self) -> QuotaLedger:
        return self._ledger

    async def get_by_path(self, session: AsyncSession, tenant_id: str, path: str) -> SyncDocument | None:
        # Live rows only; soft-deleted documents never own a path.
        return await documents_repo.fetch_one(
            session, self._stmts.live_by_path, tenant_id=tenant_id, path=path
        )

    async def get_by_id(
        self, session: AsyncSession, tenant_id: str, document_id: str
    ) -> SyncDocument | None:
        return await documents_repo.fetch_one(
            session, self._stmts.by_id, tenant_id=tenant_id, document_id=document_id
        )

    async def upsert_on_upload(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        path: str,
        stored: StoredPair,
        base_version: int | None,
        limits: TierLimits,
    ) -> UpsertResult:
        now = self._time_provider()
        current = await documents_repo.fetch_one(
            session, self._stmts.by_id_for_update, tenant_id=tenant_id, document_id=document_id
        )
        live = await documents_repo.fetch_one(
            session, self._stmts.live_by_path_for_update, tenant_id=tenant_id, path=path
        )

        if live is not None and live.id != document_id:
            # Another writer created this path after the proposal was admitted.
            return UpsertResult(status="conflict", current=live)
        if current is not None and current.path != path:
            # The document moved while its new blobs were being written.
            return UpsertResult(status="stale", current=current)
        if current is not None and base_version is not None and current.version != base_version:
            return UpsertResult(status="conflict", current=current)

        previous_size = 0
        if current is not None and current.deleted_at is None:
            previous_size = int(current.size_bytes or 0)
        size_delta = stored.size_bytes - previous_size
        is_new = current is None or current.deleted_at is not None

        # Re-admit under the ledger row lock so concurrent proposals cannot overshoot.
        decision = await self._ledger.admit(
            session,
            tenant_id=tenant_id,
            limits=limits,
            delta_bytes=size_delta,
            is_new_document=is_new,
            lock=True,
        )
        if not decision.allowed:
            return UpsertResult(status="quota", decision=decision)

        replaced_keys = None
        if current is not None and current.content_key != stored.content_key:
            replaced_keys = (current.content_key, current.sidecar_key)

        if current is None:
            document = documents_repo.create_document_row(
                document_id=document_id,
                tenant_id=tenant_id,
                path=path,
                content_hash=stored.content_hash,
                sidecar_hash=stored.sidecar_hash,
                content_key=stored.content_key,
                sidecar_key=stored.sidecar_key,
                size_bytes=stored.size_bytes,
                now=now,
            )
            session.add(document)
        else:
            document = current
            document.content_hash = stored.content_hash
            document.sidecar_hash = stored.sidecar_hash
            document.content_key = stored.content_key
            document.sidecar_key = stored.sidecar_key
            document.size_bytes = stored.size_bytes
            document.version = int(document.version) + 1
            document.updated_at = now
            document.deleted_at = None

        await session.flush()
        await self._ledger.apply(session, tenant_id=tenant_id, delta_bytes=size_delta)
        return UpsertResult(
            status="applied",
            document=document,
            size_delta=size_delta,
            created=current is None,
            decision=decision,
            replaced_keys=replaced_keys,
        )

    async def replace_current(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        stored: StoredPair,
    ) -> UpsertResult | None:
        # Promote already-written blobs to current and bump the version; used by conflict resolution.
        document = await documents_repo.fetch_one(
            session, self._stmts.by_id_for_update, tenant_id=tenant_id, document_id=document_id
        )
        if document is None or document.deleted_at is not None:
            return None
        size_delta = stored.size_bytes - int(document.size_bytes or 0)
        replaced_keys = None
        if document.content_key != stored.content_key:
            replaced_keys = (document.content_key, document.sidecar_key)
        document.content_hash = stored.content_hash
        document.sidecar_hash = stored.sidecar_hash
        document.content_key = stored.content_key
        document.sidecar_key = stored.sidecar_key
        document.size_bytes = stored.size_bytes
        document.version = int(document.version) + 1
        document.updated_at = self._time_provider()
        await session.flush()
        await self._ledger.apply(session, tenant_id=tenant_id, delta_bytes=size_delta)
        return UpsertResult(
            status="applied",
            document=document,
            size_delta=size_delta,
            replaced_keys=replaced_keys,
        )

    async def rename(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        document_id: str,
        new_path: str,
    ) -> RenameResult:
        document = await documents_repo.fetch_one(
            session, self._stmts.by_id_for_update, tenant_id=tenant_id, document_id=document_id
        )
        if document is None or document.deleted_at is not None:
            return RenameResult(status="not_found")
        old_path = document.path
        if old_path == new_path:
            return RenameResult(status="unchanged", document=document, old_path=old_path)
        owner = await documents_repo.path_owner(
            session, self._stmts.live_path_owner, tenant_id=tenant_id, path=new_path
        )
        if owner is not None and owner != document_id:
            return RenameResult(status="path_in_use", document=document, old_path=old_path)
        # Rename touches the path only; version stays put.
        document.path = new_path
        document.updated_at = self._time_provider()
        await session.flush()
        return RenameResult(status="renamed", document=document, old_path=old_path)

    async def soft_delete(
        self, session: AsyncSession, *, tenant_id: str, document_id: str
    ) -> SyncDocument | None:
        document = await documents_repo.fetch_one(
            session, self._stmts.by_id_for_update, tenant_id=tenant_id, document_id=document_id
        )
        if document is None or document.deleted_at is not None:
            return None
        now = self._time_provider()
        document.deleted_at = now
        document.updated_at = now
        await session.flush()
        await self._ledger.apply(
            session, tenant_id=tenant_id, delta_bytes=-int(document.size_bytes or 0)
        )
        return document

    async def purge(self, session: AsyncSession, *, tenant_id: str, document_id: str) -> bool:
        document = await documents_repo.fetch_one(
            session, self._stmts.by_id_for_update, tenant_id=tenant_id, document_id=document_id
        )
        if document is None:
            return False
        # Soft-deleted rows were already released from the ledger.
        released = 0 if document.deleted_at is not None else int(document.size_bytes or 0)
        await session.delete(document)
        await session.flush()
        await self._ledger.apply(session, tenant_id=tenant_id, delta_bytes=-released)
        logger.info("catalog_document_purged tenant_id=%s document_id=%s", tenant_id, document_id)
        return True

    async def list(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        limit: int,
        cursor: ListCursor | None = None,
        include_deleted: bool = True,
    ) -> DocumentPage:
        stmt = select(SyncDocument).where(tenant_predicate(SyncDocument, tenant_id))
        if not include_deleted:
            stmt = stmt.where(SyncDocument.deleted_at.is_(None))
        if cursor is not None:
            stmt = stmt.where(
                after_cursor(
                    cursor, updated_at_column=SyncDocument.updated_at, id_column=SyncDocument.id
                )
            )
        stmt = stmt.order_by(SyncDocument.updated_at.desc(), SyncDocument.id.desc()).limit(limit + 1)
        rows = list((await session.execute(stmt)).scalars().all())
        return DocumentPage(documents=rows[:limit], has_more=len(rows) > limit)
