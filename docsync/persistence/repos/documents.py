from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Select, bindparam, select
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.domain.models import SyncDocument
from docsync.persistence.guards import require_tenant_id


@dataclass(frozen=True)
class CatalogStatements:
    """Parameterised catalog statements built once and reused per call.

    Values are supplied at execution through bind parameters, so the compiled
    form is cached by SQLAlchemy across requests.
    """

    live_by_path: Select
    live_by_path_for_update: Select
    by_id: Select
    by_id_for_update: Select
    live_path_owner: Select

    @classmethod
    def build(cls) -> "CatalogStatements":
        tenant = bindparam("tenant_id")
        live_by_path = select(SyncDocument).where(
            SyncDocument.tenant_id == tenant,
            SyncDocument.path == bindparam("path"),
            SyncDocument.deleted_at.is_(None),
        )
        by_id = select(SyncDocument).where(
            SyncDocument.tenant_id == tenant,
            SyncDocument.id == bindparam("document_id"),
        )
        live_path_owner = select(SyncDocument.id).where(
            SyncDocument.tenant_id == tenant,
            SyncDocument.path == bindparam("path"),
            SyncDocument.deleted_at.is_(None),
        )
        return cls(
            live_by_path=live_by_path,
            live_by_path_for_update=live_by_path.with_for_update(),
            by_id=by_id,
            by_id_for_update=by_id.with_for_update(),
            live_path_owner=live_path_owner,
        )


async def fetch_one(
    session: AsyncSession, stmt: Select, *, tenant_id: str, **params: object
) -> SyncDocument | None:
    require_tenant_id(tenant_id)
    result = await session.execute(stmt, {"tenant_id": tenant_id, **params})
    return result.scalar_one_or_none()


async def path_owner(session: AsyncSession, stmt: Select, *, tenant_id: str, path: str) -> str | None:
    require_tenant_id(tenant_id)
    result = await session.execute(stmt, {"tenant_id": tenant_id, "path": path})
    return result.scalar_one_or_none()


def create_document_row(
    *,
    document_id: str,
    tenant_id: str,
    path: str,
    content_hash: str,
    sidecar_hash: str,
    content_key: str,
    sidecar_key: str,
    size_bytes: int,
    now: datetime,
) -> SyncDocument:
    return SyncDocument(
        id=document_id,
        tenant_id=tenant_id,
        path=path,
        version=1,
        content_hash=content_hash,
        sidecar_hash=sidecar_hash,
        content_key=content_key,
        sidecar_key=sidecar_key,
        size_bytes=size_bytes,
        created_at=now,
        updated_at=now,
        deleted_at=None,
    )


async def list_expired_deletes(
    session: AsyncSession, *, cutoff: datetime, limit: int
) -> list[SyncDocument]:
    # Cross-tenant by nature: the sweeper works over every tenant's expired rows.
    result = await session.execute(
        select(SyncDocument)
        .where(SyncDocument.deleted_at.is_not(None), SyncDocument.deleted_at < cutoff)
        .order_by(SyncDocument.deleted_at, SyncDocument.id)
        .limit(limit)
    )
    return list(result.scalars().all())

