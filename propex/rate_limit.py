"""Token-bucket rate limiters for outbound calls.

Search, LLM and per-domain fetch traffic each get their own budget. A waiter
sleeps outside the lock, so no lock is ever held across I/O.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable


class TokenBucket:
    """Async token bucket: ``rate`` tokens per second, at most ``burst`` stored."""

    def __init__(
        self,
        rate: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self._rate = rate
        self._capacity = float(burst)
        self._tokens = float(burst)
        self._clock = clock
        self._updated = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
            self._updated = now

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    async def acquire(self) -> None:
        """Wait until a token is available, then take it."""
        while True:
            async with self._lock:
                if self.try_acquire():
                    return
                wait_s = (1.0 - self._tokens) / self._rate
            await asyncio.sleep(wait_s)


class DomainRateLimiter:
    """One token bucket per target host, created lazily."""

    def __init__(self, rate: float, burst: int = 1) -> None:
        self._rate = rate
        self._burst = burst
        self._buckets: dict[str, TokenBucket] = {}

    def bucket_for(self, host: str) -> TokenBucket:
        key = host.lower()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(self._rate, self._burst)
            self._buckets[key] = bucket
        return bucket

    async def acquire(self, host: str) -> None:
        await self.bucket_for(host).acquire()

    def __len__(self) -> int:
        return len(self._buckets)
