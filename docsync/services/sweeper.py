from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable

from docsync.core.config import Settings, get_settings
from docsync.domain.models import SyncConflict, SyncDocument, utc_now
from docsync.persistence.db import SessionFactory
from docsync.persistence.repos import conflicts as conflicts_repo
from docsync.persistence.repos import documents as documents_repo
from docsync.persistence.repos import operations as operations_repo
from docsync.services.blobstore import BlobStore, build_blob_store
from docsync.services.catalog import DocumentCatalog
from docsync.services.quota import QuotaLedger
from docsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    documents: int = 0
    conflicts: int = 0
    operations: int = 0
    failures: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class Sweeper:
    """Reclaims expired soft-deletes, resolved conflicts and old operation-log rows.

    Each item is handled on its own; a failing blob delete leaves that row in
    place for the next pass and never aborts the batch.
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
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._time_provider = time_provider or utc_now
        self._catalog = DocumentCatalog(
            ledger=QuotaLedger(time_provider=self._time_provider),
            time_provider=self._time_provider,
        )

    async def _purge_document(self, document: SyncDocument, cutoff: datetime) -> bool:
        # Blobs first: a failed delete must leave the row so the next pass retries.
        await self._blob_store.delete_pair(document.content_key, document.sidecar_key)
        async with self._session_factory() as session:
            current = await self._catalog.get_by_id(session, document.tenant_id, document.id)
            if current is None or current.deleted_at is None or current.deleted_at >= cutoff:
                return False
            purged = await self._catalog.purge(
                session, tenant_id=document.tenant_id, document_id=document.id
            )
            await session.commit()
        return purged

    async def sweep_documents(self, report: SweepReport) -> None:
        cutoff = self._time_provider() - timedelta(days=self._settings.retention_soft_delete_days)
        batch_size = max(1, self._settings.sweeper_batch_size)
        skipped: set[str] = set()
        while True:
            async with self._session_factory() as session:
                batch = await documents_repo.list_expired_deletes(
                    session, cutoff=cutoff, limit=batch_size + len(skipped)
                )
            batch = [document for document in batch if document.id not in skipped][:batch_size]
            if not batch:
                return
            for document in batch:
                try:
                    if await self._purge_document(document, cutoff):
                        report.documents += 1
                    else:
                        skipped.add(document.id)
                except Exception as exc:  # noqa: BLE001 - per-item failures are retried next pass
                    report.failures += 1
                    skipped.add(document.id)
                    logger.warning(
                        "sweep_document_failed tenant_id=%s document_id=%s",
                        document.tenant_id,
                        document.id,
                        exc_info=exc,
                    )
            if len(batch) < batch_size:
                return

    async def _drop_conflict(self, conflict: SyncConflict) -> None:
        async with self._session_factory() as session:
            shared = await conflicts_repo.count_version_references(
                session,
                tenant_id=conflict.tenant_id,
                document_id=conflict.document_id,
                version=conflict.local_version,
                exclude_id=conflict.id,
            )
        # Preserved blobs are addressed by base version; keep them while another conflict points there.
        if shared == 0:
            await self._blob_store.delete_pair(conflict.local_blob_key, conflict.local_sidecar_key)
        async with self._session_factory() as session:
            await conflicts_repo.delete_conflict(
                session, tenant_id=conflict.tenant_id, conflict_id=conflict.id
            )
            await session.commit()

    async def sweep_conflicts(self, report: SweepReport) -> None:
        cutoff = self._time_provider() - timedelta(days=self._settings.retention_resolved_conflict_days)
        batch_size = max(1, self._settings.sweeper_batch_size)
        skipped: set[str] = set()
        while True:
            async with self._session_factory() as session:
                batch = await conflicts_repo.list_resolved_before(
                    session, cutoff=cutoff, limit=batch_size + len(skipped)
                )
            batch = [conflict for conflict in batch if conflict.id not in skipped][:batch_size]
            if not batch:
                return
            for conflict in batch:
                try:
                    await self._drop_conflict(conflict)
                    report.conflicts += 1
                except Exception as exc:  # noqa: BLE001 - per-item failures are retried next pass
                    report.failures += 1
                    skipped.add(conflict.id)
                    logger.warning(
                        "sweep_conflict_failed tenant_id=%s conflict_id=%s",
                        conflict.tenant_id,
                        conflict.id,
                        exc_info=exc,
                    )
            if len(batch) < batch_size:
                return

    async def sweep_operations(self, report: SweepReport) -> None:
        cutoff = self._time_provider() - timedelta(days=self._settings.retention_operation_log_days)
        async with self._session_factory() as session:
            report.operations += await operations_repo.prune_operations(session, cutoff=cutoff)
            await session.commit()

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        for step in (self.sweep_documents, self.sweep_conflicts, self.sweep_operations):
            try:
                await step(report)
            except Exception as exc:  # noqa: BLE001 - one failing phase must not skip the others
                report.failures += 1
                logger.error("sweep_phase_failed phase=%s", step.__name__, exc_info=exc)
        for name, value in report.as_dict().items():
            if value:
                increment_counter(f"sweeper.{name}", value)
        logger.info(
            "sync_sweep_completed documents=%s conflicts=%s operations=%s failures=%s",
            report.documents,
            report.conflicts,
            report.operations,
            report.failures,
        )
        return report

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        # Sweep at startup, then once per interval until stopped.
        interval_s = max(1.0, float(self._settings.sweeper_interval_hours) * 3600.0)
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue


def build_sweeper(
    *,
    session_factory: SessionFactory,
    blob_store: BlobStore | None = None,
    settings: Settings | None = None,
    time_provider: Callable[[], datetime] | None = None,
) -> Sweeper:
    settings = settings or get_settings()
    return Sweeper(
        session_factory=session_factory,
        blob_store=blob_store or build_blob_store(settings, session_factory),
        settings=settings,
        time_provider=time_provider,
    )
