from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.domain.models import SyncConflict
from docsync.persistence.guards import tenant_predicate


async def get_conflict(
    session: AsyncSession, tenant_id: str, conflict_id: str, *, for_update: bool = False
) -> SyncConflict | None:
    # Tenant mismatch reads as missing to keep 404 semantics.
    stmt = select(SyncConflict).where(
        tenant_predicate(SyncConflict, tenant_id), SyncConflict.id == conflict_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_open_conflicts(session: AsyncSession, tenant_id: str) -> list[SyncConflict]:
    result = await session.execute(
        select(SyncConflict)
        .where(tenant_predicate(SyncConflict, tenant_id), SyncConflict.resolved_at.is_(None))
        .order_by(SyncConflict.created_at.desc(), SyncConflict.id.desc())
    )
    return list(result.scalars().all())


async def list_resolved_before(
    session: AsyncSession, *, cutoff: datetime, limit: int
) -> list[SyncConflict]:
    result = await session.execute(
        select(SyncConflict)
        .where(SyncConflict.resolved_at.is_not(None), SyncConflict.resolved_at < cutoff)
        .order_by(SyncConflict.resolved_at, SyncConflict.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_version_references(
    session: AsyncSession, *, tenant_id: str, document_id: str, version: int, exclude_id: str
) -> int:
    # Preserved blobs are keyed by (document, base version) and may be shared by conflicts.
    result = await session.execute(
        select(SyncConflict.id).where(
            tenant_predicate(SyncConflict, tenant_id),
            SyncConflict.document_id == document_id,
            SyncConflict.local_version == version,
            SyncConflict.id != exclude_id,
        )
    )
    return len(result.scalars().all())


async def delete_conflict(session: AsyncSession, *, tenant_id: str, conflict_id: str) -> int:
    result = await session.execute(
        delete(SyncConflict).where(
            tenant_predicate(SyncConflict, tenant_id), SyncConflict.id == conflict_id
        )
    )
    return int(result.rowcount or 0)
