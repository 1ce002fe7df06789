"""Operational counters for the dataset gateway.

Lightweight in-memory counters behind a single lock, exposed on /v1/stats.
Prometheus export lives in metrics.py.

Counters reset on process restart and carry no dataset or requester
identifiers. For per-requester accounting see usage.py.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    grants_issued_total: int = 0
    grants_revoked_total: int = 0
    queries_total: int = 0
    searches_total: int = 0
    downloads_total: int = 0

    denials_total: int = 0
    denials_by_code: Dict[str, int] = field(default_factory=dict)

    upstream_retries_total: int = 0
    sweeps_total: int = 0
    grants_evicted_total: int = 0
    rate_limited_total: int = 0
    rate_limited_by_endpoint: Dict[str, int] = field(default_factory=dict)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_grant_issued(self) -> None:
        with self._lock:
            self._c.grants_issued_total += 1

    def record_grant_revoked(self) -> None:
        with self._lock:
            self._c.grants_revoked_total += 1

    def record_query(self) -> None:
        with self._lock:
            self._c.queries_total += 1

    def record_search(self) -> None:
        with self._lock:
            self._c.searches_total += 1

    def record_download(self) -> None:
        with self._lock:
            self._c.downloads_total += 1

    def record_denial(self, code: str) -> None:
        with self._lock:
            self._c.denials_total += 1
            self._inc_map(self._c.denials_by_code, code or "unknown")

    def record_upstream_retry(self) -> None:
        with self._lock:
            self._c.upstream_retries_total += 1

    def record_sweep(self, evicted: int) -> None:
        with self._lock:
            self._c.sweeps_total += 1
            self._c.grants_evicted_total += max(0, int(evicted))

    def record_rate_limited(self, endpoint: str) -> None:
        with self._lock:
            self._c.rate_limited_total += 1
            self._inc_map(self._c.rate_limited_by_endpoint, endpoint or "unknown")

    def reset(self) -> None:
        with self._lock:
            self._start_monotonic = time.monotonic()
            self._c = _Counters()

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "grants_issued_total": c.grants_issued_total,
                "grants_revoked_total": c.grants_revoked_total,
                "queries_total": c.queries_total,
                "searches_total": c.searches_total,
                "downloads_total": c.downloads_total,
                "denials_total": c.denials_total,
                "denials_by_code": dict(c.denials_by_code),
                "upstream_retries_total": c.upstream_retries_total,
                "sweeps_total": c.sweeps_total,
                "grants_evicted_total": c.grants_evicted_total,
                "rate_limited_total": c.rate_limited_total,
                "rate_limited_by_endpoint": dict(c.rate_limited_by_endpoint),
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
