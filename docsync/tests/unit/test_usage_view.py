from __future__ import annotations

from datetime import datetime, timezone

from docsync.core.config import TierLimits
from docsync.services.quota import UsageSnapshot, usage_view


def test_usage_view_reports_remaining_and_percent() -> None:
    snapshot = UsageSnapshot(
        tenant_id="t1",
        document_count=3,
        total_size_bytes=25,
        last_sync_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    view = usage_view(snapshot, TierLimits(tier="free", max_bytes=100, max_documents=10, requests_per_minute=30))
    assert view == {
        "documentCount": 3,
        "totalSizeBytes": 25,
        "limitBytes": 100,
        "limitDocuments": 10,
        "remainingBytes": 75,
        "percentUsed": 25.0,
        "lastSyncAt": "2026-01-01T00:00:00+00:00",
        "tier": "free",
    }


def test_usage_view_never_reports_negative_remaining() -> None:
    snapshot = UsageSnapshot(tenant_id="t1", document_count=1, total_size_bytes=150, last_sync_at=None)
    view = usage_view(snapshot, TierLimits(tier="free", max_bytes=100, max_documents=10, requests_per_minute=30))
    assert view["remainingBytes"] == 0
    assert view["lastSyncAt"] is None
