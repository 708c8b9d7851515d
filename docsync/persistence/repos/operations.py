from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.domain.models import SyncOperation
from docsync.persistence.guards import tenant_predicate


async def list_operations(
    session: AsyncSession,
    tenant_id: str,
    *,
    document_id: str | None = None,
    operation: str | None = None,
    limit: int = 100,
) -> list[SyncOperation]:
    # Newest first; callers use this for investigations and tests.
    stmt = select(SyncOperation).where(tenant_predicate(SyncOperation, tenant_id))
    if document_id:
        stmt = stmt.where(SyncOperation.document_id == document_id)
    if operation:
        stmt = stmt.where(SyncOperation.operation == operation)
    result = await session.execute(
        stmt.order_by(SyncOperation.created_at.desc(), SyncOperation.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def prune_operations(session: AsyncSession, *, cutoff: datetime) -> int:
    # Remove operation log rows beyond the retention window.
    result = await session.execute(delete(SyncOperation).where(SyncOperation.created_at < cutoff))
    return int(result.rowcount or 0)
