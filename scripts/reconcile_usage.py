from __future__ import annotations

import asyncio
import sys

from docsync.core.logging import configure_logging
from docsync.persistence.db import SessionLocal
from docsync.services.quota import QuotaLedger


async def reconcile(tenant_ids: list[str]) -> None:
    configure_logging()
    ledger = QuotaLedger()
    async with SessionLocal() as session:
        for tenant_id in tenant_ids:
            snapshot = await ledger.reconcile(session, tenant_id=tenant_id)
            print(
                f"tenant_id={tenant_id} document_count={snapshot.document_count} "
                f"total_size_bytes={snapshot.total_size_bytes}"
            )
        await session.commit()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: reconcile_usage.py TENANT_ID [TENANT_ID ...]")
        raise SystemExit(2)
    asyncio.run(reconcile(sys.argv[1:]))
