"""Circuit breaker for the SQLite-backed token store.

The quota counter is the one piece of state the gateway must never get wrong.
When the backing database turns slow or starts throwing OperationalErrors,
the store stops serving instead of guessing: the breaker trips and every
store call raises `StorageLockdownError` until the lockdown window passes.
The gateway surfaces that as DSG_E_UPSTREAM_UNAVAILABLE.

Env:
- DSG_DB_LATENCY_THRESHOLD_MS (default: 500): ops slower than this trip at once.
- DSG_DB_FAILURE_THRESHOLD (default: 3): consecutive failures before tripping.
- DSG_DB_LOCKDOWN_SECONDS (default: 15): length of the lockdown window.
- DSG_DB_CONNECT_TIMEOUT_SECONDS (default: 5): sqlite connect/busy timeout.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .config import _get_float, _get_int

logger = logging.getLogger("dataset_gateway.lockdown")


class StorageLockdownError(RuntimeError):
    """Raised while the token store is locked down after storage failures."""


@dataclass(frozen=True)
class CircuitBreakerConfig:
    latency_threshold_ms: int = 500
    failure_threshold: int = 3
    lockdown_seconds: int = 15
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        latency = _get_int("DSG_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        failures = _get_int("DSG_DB_FAILURE_THRESHOLD", cls.failure_threshold)
        lockdown = _get_int("DSG_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)
        timeout = _get_float("DSG_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)

        if latency <= 0:
            latency = cls.latency_threshold_ms
        return cls(
            latency_threshold_ms=latency,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
        )


class DbCircuitBreaker:
    """Failure counter with a timed lockdown window."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._lock = threading.Lock()
        self._failure_count = 0
        self._lockdown_until: float = 0.0

    def is_lockdown_active(self) -> bool:
        with self._lock:
            return time.monotonic() < self._lockdown_until

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def _trip_locked(self) -> None:
        self._lockdown_until = time.monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold
        logger.warning("token store locked down for %ss", self.config.lockdown_seconds)

    def record_success(self, elapsed_ms: float = 0.0) -> None:
        with self._lock:
            if elapsed_ms >= float(self.config.latency_threshold_ms):
                self._failure_count += 1
                self._trip_locked()
                return
            if self._failure_count > 0:
                self._failure_count -= 1

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failure_count += 1
            if exc is not None:
                logger.warning("token store failure %d/%d: %s",
                               self._failure_count, self.config.failure_threshold, exc)
            if self._failure_count >= self.config.failure_threshold:
                self._trip_locked()
