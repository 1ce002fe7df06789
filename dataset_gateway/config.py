"""Gateway configuration.

All knobs are read from environment variables once, at process start, and
carried as an immutable `GatewayConfig` instance. Malformed values fall back
to the defaults; numeric values are clamped to sensible bounds.

Env:
- DSG_GATEWAY_ID (default: dsg_gateway_001)
- DSG_DEFAULT_DURATION_SECONDS (default: 86400)
- DSG_DEFAULT_MAX_DOWNLOADS (default: 5)
- DSG_PAYMENT_TIMEOUT_SECONDS (default: 10)
- DSG_UPSTREAM_RETRY_BACKOFF_SECONDS (default: 0.2)
- DSG_SWEEP_INTERVAL_SECONDS (default: 3600)
- DSG_STORE: memory|sqlite (default: memory)
- DSG_DB_PATH (default: dataset_gateway.db)
- DSG_LOCK_STRIPES (default: 64)
- DSG_QUERY_HISTORY_MAX (default: 10000)
- DSG_PROVENANCE_LOG_PATH (optional JSONL file)
- DSG_PUBLIC_BASE_URL (optional, used to build download URLs)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _get_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    gateway_id: str = "dsg_gateway_001"
    default_duration_seconds: int = 24 * 3600
    default_max_downloads: int = 5
    payment_timeout_seconds: float = 10.0
    upstream_retry_backoff_seconds: float = 0.2
    sweep_interval_seconds: float = 3600.0
    store_backend: str = "memory"
    db_path: str = "dataset_gateway.db"
    lock_stripes: int = 64
    query_history_max: int = 10_000
    provenance_log_path: Optional[str] = None
    public_base_url: str = ""

    @property
    def default_duration_ms(self) -> int:
        return int(self.default_duration_seconds) * 1000

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        duration = _get_int("DSG_DEFAULT_DURATION_SECONDS", cls.default_duration_seconds)
        max_downloads = _get_int("DSG_DEFAULT_MAX_DOWNLOADS", cls.default_max_downloads)
        payment_timeout = _get_float("DSG_PAYMENT_TIMEOUT_SECONDS", cls.payment_timeout_seconds)
        backoff = _get_float("DSG_UPSTREAM_RETRY_BACKOFF_SECONDS", cls.upstream_retry_backoff_seconds)
        sweep_interval = _get_float("DSG_SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds)
        stripes = _get_int("DSG_LOCK_STRIPES", cls.lock_stripes)
        history = _get_int("DSG_QUERY_HISTORY_MAX", cls.query_history_max)

        store_backend = _get_str("DSG_STORE", cls.store_backend).lower()
        if store_backend not in ("memory", "sqlite"):
            store_backend = cls.store_backend

        # Clamp
        duration = max(1, min(duration, 365 * 24 * 3600))
        max_downloads = max(1, min(max_downloads, 1_000_000))
        if payment_timeout <= 0:
            payment_timeout = cls.payment_timeout_seconds
        backoff = max(0.0, min(backoff, 30.0))
        sweep_interval = max(1.0, sweep_interval)
        stripes = max(1, min(stripes, 4096))
        history = max(100, min(history, 5_000_000))

        return cls(
            gateway_id=_get_str("DSG_GATEWAY_ID", cls.gateway_id) or cls.gateway_id,
            default_duration_seconds=duration,
            default_max_downloads=max_downloads,
            payment_timeout_seconds=payment_timeout,
            upstream_retry_backoff_seconds=backoff,
            sweep_interval_seconds=sweep_interval,
            store_backend=store_backend,
            db_path=_get_str("DSG_DB_PATH", cls.db_path) or cls.db_path,
            lock_stripes=stripes,
            query_history_max=history,
            provenance_log_path=_get_str("DSG_PROVENANCE_LOG_PATH") or None,
            public_base_url=_get_str("DSG_PUBLIC_BASE_URL").rstrip("/"),
        )
