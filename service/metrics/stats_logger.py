"""Request latency stats for MemVault.

Provides:
- log_request: called by timing middleware to track per-request latency
- get_request_summary: in-memory counts and latency percentiles for /stats
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Any

log = logging.getLogger(__name__)

# ── In-memory request buffer (rolling, bounded) ───────────────────────────────
_req_lock = threading.Lock()
_req_latencies: list[float] = []
_req_status_counts: Counter[int] = Counter()
_MAX_SAMPLES = 10_000


def log_request(path: str, method: str, status: int, duration_ms: float) -> None:
    """Record one request's latency and status."""
    with _req_lock:
        _req_latencies.append(duration_ms)
        _req_status_counts[status] += 1
        # Keep the buffer bounded (last 10k requests)
        if len(_req_latencies) > _MAX_SAMPLES:
            del _req_latencies[: _MAX_SAMPLES // 2]
    log.debug("request %s %s -> %d in %.2fms", method, path, status, duration_ms)


def _percentile(values: list[float], pct: float) -> float:
    if not values:
        return 0.0
    sorted_vals = sorted(values)
    idx = int(len(sorted_vals) * pct / 100)
    idx = min(idx, len(sorted_vals) - 1)
    return sorted_vals[idx]


def get_request_summary() -> dict[str, Any]:
    with _req_lock:
        latencies = list(_req_latencies)
        statuses = dict(_req_status_counts)

    avg_latency = sum(latencies) / len(latencies) if latencies else 0.0
    return {
        "total": sum(statuses.values()),
        "by_status": {str(k): v for k, v in sorted(statuses.items())},
        "avg_latency_ms": round(avg_latency, 2),
        "p95_latency_ms": round(_percentile(latencies, 95), 2),
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
    }


def reset_request_stats() -> None:
    with _req_lock:
        _req_latencies.clear()
        _req_status_counts.clear()
