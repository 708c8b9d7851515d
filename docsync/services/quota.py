from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.core.config import TierLimits
from docsync.domain.models import SyncDocument, SyncUsage, utc_now
from docsync.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

DIMENSION_BYTES = "bytes"
DIMENSION_DOCUMENTS = "documents"


@dataclass(frozen=True)
class UsageSnapshot:
    tenant_id: str
    document_count: int
    total_size_bytes: int
    last_sync_at: datetime | None


@dataclass(frozen=True)
class QuotaDecision:
    # Allow, or deny with the first violated dimension and the ledger it was judged against.
    allowed: bool
    snapshot: UsageSnapshot
    limits: TierLimits
    delta_bytes: int
    dimension: str | None = None


def _snapshot(tenant_id: str, row: SyncUsage | None) -> UsageSnapshot:
    if row is None:
        return UsageSnapshot(tenant_id=tenant_id, document_count=0, total_size_bytes=0, last_sync_at=None)
    return UsageSnapshot(
        tenant_id=tenant_id,
        document_count=int(row.document_count or 0),
        total_size_bytes=int(row.total_size_bytes or 0),
        last_sync_at=row.last_sync_at,
    )


def usage_view(snapshot: UsageSnapshot, limits: TierLimits) -> dict[str, Any]:
    # Client-facing projection of the ledger against the tenant's tier.
    percent = (snapshot.total_size_bytes / limits.max_bytes) * 100 if limits.max_bytes > 0 else 0.0
    return {
        "documentCount": snapshot.document_count,
        "totalSizeBytes": snapshot.total_size_bytes,
        "limitBytes": limits.max_bytes,
        "limitDocuments": limits.max_documents,
        "remainingBytes": max(limits.max_bytes - snapshot.total_size_bytes, 0),
        "percentUsed": round(percent, 4),
        "lastSyncAt": snapshot.last_sync_at.isoformat() if snapshot.last_sync_at else None,
        "tier": limits.tier,
    }


def quota_details(decision: QuotaDecision) -> dict[str, Any]:
    return {
        "dimension": decision.dimension,
        "required_bytes": decision.delta_bytes,
        "usage": usage_view(decision.snapshot, decision.limits),
    }


class QuotaLedger:
    """Per-tenant byte and document-count ledger.

    Both operations run inside the caller's catalog transaction so admission and
    the matching catalog write commit or roll back together.
    """

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or utc_now

    async def _load(self, session: AsyncSession, tenant_id: str, *, lock: bool) -> SyncUsage | None:
        stmt = select(SyncUsage).where(tenant_predicate(SyncUsage, tenant_id))
        if lock:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    async def snapshot(self, session: AsyncSession, tenant_id: str) -> UsageSnapshot:
        return _snapshot(tenant_id, await self._load(session, tenant_id, lock=False))

    async def admit(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        limits: TierLimits,
        delta_bytes: int,
        is_new_document: bool,
        lock: bool = False,
    ) -> QuotaDecision:
        snapshot = _snapshot(tenant_id, await self._load(session, tenant_id, lock=lock))
        dimension: str | None = None
        if snapshot.total_size_bytes + delta_bytes > limits.max_bytes:
            dimension = DIMENSION_BYTES
        elif is_new_document and snapshot.document_count + 1 > limits.max_documents:
            dimension = DIMENSION_DOCUMENTS
        return QuotaDecision(
            allowed=dimension is None,
            snapshot=snapshot,
            limits=limits,
            delta_bytes=delta_bytes,
            dimension=dimension,
        )

    async def apply(self, session: AsyncSession, *, tenant_id: str, delta_bytes: int) -> UsageSnapshot:
        # Byte totals move by delta; the document count is recounted from the catalog.
        now = self._time_provider()
        row = await self._load(session, tenant_id, lock=True)
        if row is None:
            row = SyncUsage(tenant_id=tenant_id, document_count=0, total_size_bytes=0)
            session.add(row)
        live_count = (
            await session.execute(
                select(func.count())
                .select_from(SyncDocument)
                .where(tenant_predicate(SyncDocument, tenant_id), SyncDocument.deleted_at.is_(None))
            )
        ).scalar_one()
        row.total_size_bytes = max(0, int(row.total_size_bytes or 0) + int(delta_bytes))
        row.document_count = int(live_count or 0)
        row.last_sync_at = now
        row.updated_at = now
        return _snapshot(tenant_id, row)

    async def reconcile(self, session: AsyncSession, *, tenant_id: str) -> UsageSnapshot:
        # Rebuild the ledger from live catalog rows, repairing any drift.
        now = self._time_provider()
        count, total = (
            await session.execute(
                select(func.count(), func.coalesce(func.sum(SyncDocument.size_bytes), 0)).where(
                    tenant_predicate(SyncDocument, tenant_id), SyncDocument.deleted_at.is_(None)
                )
            )
        ).one()
        row = await self._load(session, tenant_id, lock=True)
        if row is None:
            row = SyncUsage(tenant_id=tenant_id)
            session.add(row)
        if int(row.total_size_bytes or 0) != int(total) or int(row.document_count or 0) != int(count):
            logger.warning(
                "ledger_drift_repaired tenant_id=%s count=%s->%s bytes=%s->%s",
                tenant_id,
                row.document_count,
                count,
                row.total_size_bytes,
                total,
            )
        row.document_count = int(count)
        row.total_size_bytes = int(total)
        row.updated_at = now
        return _snapshot(tenant_id, row)
