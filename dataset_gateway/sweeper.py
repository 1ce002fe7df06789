"""Background reclamation of expired grants.

The sweeper only reclaims space. Correctness never depends on it: every
read path in AccessGateway re-checks expiry on its own.

Lifecycle is explicit. Nothing starts on import; the server starts the
sweeper in its lifespan hook and stops it on shutdown.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Optional

from . import metrics
from .models import _now_ms
from .ops_stats import OPS_STATS
from .token_store import TokenStore

logger = logging.getLogger("dataset_gateway.sweeper")


class SweeperState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"


class ExpirySweeper:
    """Periodically deletes grants whose expiry has passed."""

    def __init__(
        self,
        store: TokenStore,
        interval_seconds: float = 3600.0,
        clock: Callable[[], int] = _now_ms,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.store = store
        self.interval_seconds = float(interval_seconds)
        self.clock = clock
        self._state = SweeperState.IDLE
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> SweeperState:
        with self._state_lock:
            return self._state

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep_once(self) -> int:
        """Run one tick. Returns the number of grants removed; never raises."""
        with self._state_lock:
            if self._state is SweeperState.SCANNING:
                return 0
            self._state = SweeperState.SCANNING

        removed = 0
        try:
            now = self.clock()
            try:
                grants = list(self.store.scan())
            except Exception:
                logger.exception("expiry sweep: scan failed")
                return 0
            for grant in grants:
                try:
                    if grant.is_expired(now) and self.store.delete(grant.access_key):
                        removed += 1
                except Exception:
                    logger.exception("expiry sweep: failed to reclaim grant for dataset %s", grant.dataset_id)
            if removed:
                logger.info("expiry sweep removed %d grant(s)", removed)
            OPS_STATS.record_sweep(removed)
            metrics.record_evicted(removed)
            return removed
        finally:
            with self._state_lock:
                self._state = SweeperState.IDLE

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.sweep_once()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="dsg-expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info("expiry sweeper started (interval=%ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
