from __future__ import annotations

import threading

from lexhost.services.telemetry import (
    counters_snapshot,
    increment_counter,
    p95_latency,
    record_request,
    reset_telemetry,
    surface_for_path,
)


def test_counters_survive_concurrent_increments_from_threads() -> None:
    before = counters_snapshot().get("script_errors_total", 0)

    def bump() -> None:
        for _ in range(5000):
            increment_counter("script_errors_total")

    workers = [threading.Thread(target=bump) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()
    assert counters_snapshot()["script_errors_total"] == before + 40000


def test_p95_latency_groups_by_surface() -> None:
    reset_telemetry()
    for latency in range(1, 21):
        record_request(path="/xrpc/com.example.ping", status_code=200, latency_ms=float(latency))
    record_request(path="/admin/lexicons", status_code=200, latency_ms=500.0)
    assert surface_for_path("/health") == "other"
    assert p95_latency(60, surface="xrpc") == 19.0
    assert p95_latency(60, surface="admin") == 500.0
    assert p95_latency(60, surface="other") is None
