"""
Per-client attempt limiter for login and password endpoints.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request


@dataclass
class RateLimitBucket:
    client_key: str
    window_start: float
    attempt_count: int = 0


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


def client_key(request: Request) -> str:
    """The peer address.

    X-Forwarded-For is resolved by uvicorn, and only for proxies listed in
    FORWARDED_ALLOW_IPS; a client-supplied header never picks its own key.
    """
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimiter:
    """Fixed window per key. Only failures create buckets; expired ones are dropped."""

    def __init__(self, window_seconds: float, max_attempts: int, clock: Callable[[], float] = time.monotonic):
        self.window = window_seconds
        self.max_attempts = max_attempts
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def _expired(self, bucket: RateLimitBucket, now: float) -> bool:
        return now - bucket.window_start >= self.window

    def _current(self, key: str) -> Optional[RateLimitBucket]:
        bucket = self._buckets.get(key)
        if bucket is not None and self._expired(bucket, self._clock()):
            del self._buckets[key]
            return None
        return bucket

    def check(self, key: str) -> RateLimitDecision:
        bucket = self._current(key)
        used = bucket.attempt_count if bucket else 0
        if used < self.max_attempts:
            return RateLimitDecision(allowed=True, remaining=self.max_attempts - used)
        elapsed = self._clock() - bucket.window_start
        return RateLimitDecision(allowed=False, remaining=0, retry_after=max(1, math.ceil(self.window - elapsed)))

    def record_failure(self, key: str):
        bucket = self._current(key)
        if bucket is None:
            self.sweep()
            bucket = self._buckets[key] = RateLimitBucket(client_key=key, window_start=self._clock())
        bucket.attempt_count += 1

    def reset(self, key: str):
        self._buckets.pop(key, None)

    def sweep(self) -> int:
        """Drop every bucket whose window has passed; returns how many went."""
        now = self._clock()
        stale = [key for key, bucket in self._buckets.items() if self._expired(bucket, now)]
        for key in stale:
            del self._buckets[key]
        return len(stale)
