from __future__ import annotations

import asyncio
import logging
from collections import deque
from time import monotonic

from records_engine.errors import RateLimitExceeded

logger = logging.getLogger("uvicorn.error")


class SlidingWindowRateLimiter:
    """Counts shared-link lookups per caller key over a sliding window.

    Keys whose last request has left the window are forgotten, at the latest
    one window after it happened.
    """

    def __init__(self, max_requests_per_minute: int, *, window_seconds: float = 60.0) -> None:
        self._limit = max_requests_per_minute
        self._window = window_seconds
        self._buckets: dict[str, deque[float]] = {}
        self._last_sweep = monotonic()
        self._lock = asyncio.Lock()

    @property
    def tracked_keys(self) -> int:
        return len(self._buckets)

    async def check(self, key: str) -> None:
        if self._limit <= 0:
            return
        now = monotonic()
        window_start = now - self._window
        async with self._lock:
            if now - self._last_sweep >= self._window:
                self._sweep(window_start)
                self._last_sweep = now

            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = deque()
            while bucket and bucket[0] < window_start:
                bucket.popleft()
            if len(bucket) >= self._limit:
                logger.warning("share.rate_limited | %s", {"key": key, "limit": self._limit})
                raise RateLimitExceeded()
            bucket.append(now)

    def _sweep(self, window_start: float) -> None:
        stale = [key for key, bucket in self._buckets.items() if not bucket or bucket[-1] < window_start]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("share.rate_limit_swept | %s", {"evicted": len(stale), "remaining": len(self._buckets)})
