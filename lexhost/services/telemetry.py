from __future__ import annotations

import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    surface: str
    status_code: int
    latency_ms: float


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)
# Script workers increment from threads other than the event loop.
_counters_lock = threading.Lock()


def surface_for_path(path: str) -> str:
    # Group samples by API surface rather than per method/id.
    if path.startswith("/xrpc/"):
        return "xrpc"
    if path.startswith("/admin/"):
        return "admin"
    return "other"


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for ops dashboards.
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            surface=surface_for_path(path),
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    with _counters_lock:
        _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    with _counters_lock:
        return dict(_counters)


def p95_latency(window_s: int, *, surface: str | None = None) -> float | None:
    cutoff = time.time() - window_s
    latencies = sorted(
        sample.latency_ms
        for sample in _request_samples
        if sample.ts >= cutoff and (surface is None or sample.surface == surface)
    )
    if not latencies:
        return None
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def reset_telemetry() -> None:
    # Test hook: start each scenario from empty counters.
    _request_samples.clear()
    with _counters_lock:
        _counters.clear()
