"""Per-client token buckets guarding the authorize and token endpoints.

``create_app`` builds one limiter per endpoint from
``auth_rate_per_second`` / ``auth_rate_burst``; keys are client IPs.
Buckets live in process memory, so limits are per worker.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

from pocketauth.config import Settings

__all__ = ["RateLimiter", "RateLimitInfo"]


@dataclass(slots=True)
class _Bucket:
    tokens: float
    updated: float


@dataclass(frozen=True, slots=True)
class RateLimitInfo:
    """Outcome of one ``RateLimiter.check`` call."""

    allowed: bool
    limit: int
    remaining: int
    reset_after: float  # seconds until the bucket is full (allowed) or has a token (denied)

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.reset_after))

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


SWEEP_INTERVAL = 60.0  # seconds between idle-bucket sweeps inside check()
IDLE_MAX_AGE = 3600.0


class RateLimiter:
    """Token bucket: *capacity* requests at once, refilled at *rate* per second."""

    def __init__(self, rate: float, capacity: int):
        self.rate = rate
        self.capacity = capacity
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    @classmethod
    def from_settings(cls, settings: Settings) -> RateLimiter:
        return cls(rate=settings.auth_rate_per_second, capacity=settings.auth_rate_burst)

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitInfo:
        """Take one token for *key* if available."""
        now = time.monotonic()
        with self._lock:
            if now - self._last_sweep >= SWEEP_INTERVAL:
                self._evict(now - self._idle_after())
                self._last_sweep = now
            bucket = self._buckets.setdefault(key, _Bucket(float(self.capacity), now))
            bucket.tokens = min(
                float(self.capacity), bucket.tokens + (now - bucket.updated) * self.rate
            )
            bucket.updated = now

            if bucket.tokens < 1.0:
                wait = (1.0 - bucket.tokens) / self.rate if self.rate > 0 else 1.0
                return RateLimitInfo(False, self.capacity, 0, wait)

            bucket.tokens -= 1.0
            full_in = (self.capacity - bucket.tokens) / self.rate if self.rate > 0 else 0.0
            return RateLimitInfo(True, self.capacity, int(bucket.tokens), full_in)

    def cleanup(self, max_age: float = IDLE_MAX_AGE) -> int:
        """Forget keys idle for more than *max_age* seconds. Returns how many."""
        cutoff = time.monotonic() - max_age
        with self._lock:
            return self._evict(cutoff)

    def _idle_after(self) -> float:
        # A bucket idle long enough to refill completely equals a missing one.
        if self.rate <= 0:
            return IDLE_MAX_AGE
        return self.capacity / self.rate

    def _evict(self, cutoff: float) -> int:
        idle = [key for key, b in self._buckets.items() if b.updated < cutoff]
        for key in idle:
            del self._buckets[key]
        return len(idle)
