from __future__ import annotations

from docsync.services import telemetry


def test_availability_and_counters() -> None:
    telemetry.reset_telemetry()
    assert telemetry.availability(60) is None
    telemetry.record_request(path="/v1/sync/status", status_code=200, latency_ms=5.0)
    telemetry.record_request(path="/v1/sync/status", status_code=503, latency_ms=7.0)
    assert telemetry.availability(60) == 50.0

    telemetry.increment_counter("sync.upload.ok")
    telemetry.increment_counter("sync.upload.ok", 2)
    assert telemetry.counters_snapshot() == {"sync.upload.ok": 3}


def test_blob_latency_grouped_by_operation() -> None:
    telemetry.reset_telemetry()
    telemetry.record_blob_call(backend="memory", operation="put", latency_ms=4.0, success=True)
    telemetry.record_blob_call(backend="memory", operation="put", latency_ms=9.0, success=False)
    telemetry.record_blob_call(backend="memory", operation="get", latency_ms=1.0, success=True)
    stats = telemetry.blob_latency_by_operation(60)
    assert stats["put"]["max"] == 9.0
    assert stats["put"]["failures"] == 1
    assert stats["get"]["p95"] == 1.0
