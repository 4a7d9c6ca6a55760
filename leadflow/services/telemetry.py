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


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for availability reporting.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ingest outcomes, dispatch transitions and degraded paths.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def record_outcome(component: str, outcome: str) -> None:
    # One counter per component outcome, e.g. ingest.duplicate or reconcile.degraded.
    increment_counter(f"{component}.{outcome}")


def availability(window_s: int) -> float | None:
    # Calculate availability as % of non-5xx requests over the window.
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((len(samples) - failures) / len(samples)) * 100.0


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    cutoff = time.time() - window_s
    latencies = sorted(
        sample.latency_ms
        for sample in _request_samples
        if sample.ts >= cutoff and (path_prefix is None or sample.path.startswith(path_prefix))
    )
    if not latencies:
        return None
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Clear in-process metrics for deterministic tests.
    _request_samples.clear()
    _counters.clear()
    _gauges.clear()
