"""In-process rate limiting for the access endpoint.

Per-process token buckets keyed by requester. Not distributed; put a proxy
limiter in front for multi-instance deployments.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple


@dataclass
class TokenBucket:
    """A basic token bucket.

    capacity: max tokens
    refill_rate_per_sec: tokens added per second
    """

    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float, now: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=now)

    def allow(self, now: float, cost: float = 1.0) -> bool:
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class RateLimiter:
    """Keyed token-bucket rate limiter."""

    def __init__(
        self,
        capacity: float,
        refill_rate_per_sec: float,
        max_keys: int = 20000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0 or refill_rate_per_sec <= 0:
            raise ValueError("capacity and refill_rate_per_sec must be positive")
        self._capacity = float(capacity)
        self._refill = float(refill_rate_per_sec)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, TokenBucket] = {}

    @classmethod
    def from_spec(cls, spec: str, **kwargs) -> "RateLimiter":
        capacity, per_sec = parse_rate_limit(spec)
        return cls(capacity, per_sec, **kwargs)

    def _evict_full_locked(self, now: float) -> None:
        # Buckets that have refilled completely carry no state worth keeping.
        for key in [k for k, b in self._buckets.items()
                    if b.tokens + (now - b.last_ts) * b.refill_rate_per_sec >= b.capacity]:
            del self._buckets[key]

    def allow(self, key: str, cost: float = 1.0) -> bool:
        if not key:
            key = "_anon"
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self._max_keys:
                    self._evict_full_locked(now)
                    if len(self._buckets) >= self._max_keys:
                        return False
                bucket = TokenBucket.new(self._capacity, self._refill, now)
                self._buckets[key] = bucket
            return bucket.allow(now, cost=cost)


_UNIT_SECONDS = {
    "s": 1.0, "sec": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hour": 3600.0, "hours": 3600.0,
}


def parse_rate_limit(spec: str) -> Tuple[float, float]:
    """Parse '<count>/<unit>' (e.g. '30/m', '10/s') into (capacity, refill_rate_per_sec).

    The whole count is available as a burst.
    """
    count_str, sep, unit = (spec or "").strip().lower().partition("/")
    if not sep:
        raise ValueError(f"invalid rate limit spec {spec!r}; expected like '30/m' or '10/s'")
    count = float(count_str)
    if count <= 0:
        raise ValueError("rate must be positive")
    seconds = _UNIT_SECONDS.get(unit.strip())
    if seconds is None:
        raise ValueError(f"unsupported rate unit: {unit.strip()!r}")
    return count, count / seconds
