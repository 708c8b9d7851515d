from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class BlobCallSample:
    ts: float
    backend: str
    operation: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_blob_samples: Deque[BlobCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_blob_call(*, backend: str, operation: str, latency_ms: float, success: bool) -> None:
    # Capture blob backend latency and outcomes per operation.
    _blob_samples.append(
        BlobCallSample(
            ts=time.time(),
            backend=backend,
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _p95(latencies: list[float]) -> float:
    latencies.sort()
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def availability(window_s: int) -> float | None:
    # Percentage of non-5xx requests over the window.
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((len(samples) - failures) / len(samples)) * 100.0


def blob_latency_by_operation(window_s: int) -> dict[str, dict[str, float | int | None]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[BlobCallSample]] = defaultdict(list)
    for sample in _blob_samples:
        if sample.ts >= cutoff:
            grouped[sample.operation].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for operation, samples in grouped.items():
        latencies = [sample.latency_ms for sample in samples]
        result[operation] = {
            "p95": _p95(latencies),
            "max": max(latencies),
            "failures": sum(1 for sample in samples if not sample.success),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Clear in-process samples for deterministic tests.
    _request_samples.clear()
    _blob_samples.clear()
    _counters.clear()
