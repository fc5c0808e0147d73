"""Tests for the token-bucket rate limiters."""

import pytest

from propex.rate_limit import DomainRateLimiter, TokenBucket


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTokenBucket:
    def test_burst_then_empty(self):
        clock = _Clock()
        bucket = TokenBucket(rate=2.0, burst=2, clock=clock)
        assert bucket.try_acquire()
        assert bucket.try_acquire()
        assert not bucket.try_acquire()

    def test_refills_at_rate(self):
        clock = _Clock()
        bucket = TokenBucket(rate=2.0, burst=2, clock=clock)
        bucket.try_acquire()
        bucket.try_acquire()
        clock.now = 0.5
        assert bucket.try_acquire()
        assert not bucket.try_acquire()

    def test_never_exceeds_burst(self):
        clock = _Clock()
        bucket = TokenBucket(rate=10.0, burst=3, clock=clock)
        clock.now = 100.0
        assert bucket.available == 3.0

    @pytest.mark.parametrize("rate,burst", [(0, 1), (-1.0, 1), (1.0, 0)])
    def test_invalid_parameters(self, rate, burst):
        with pytest.raises(ValueError):
            TokenBucket(rate, burst)

    @pytest.mark.asyncio
    async def test_acquire_waits_for_refill(self):
        bucket = TokenBucket(rate=200.0, burst=1)
        await bucket.acquire()
        await bucket.acquire()
        assert bucket.available < 1.0


class TestDomainRateLimiter:
    def test_one_bucket_per_host(self):
        limiter = DomainRateLimiter(rate=1.0, burst=1)
        assert limiter.bucket_for("Aduro.de") is limiter.bucket_for("aduro.de")
        limiter.bucket_for("ofenwelt.de")
        assert len(limiter) == 2

    @pytest.mark.asyncio
    async def test_hosts_do_not_share_budget(self):
        limiter = DomainRateLimiter(rate=0.001, burst=1)
        await limiter.acquire("a.example")
        await limiter.acquire("b.example")
        assert len(limiter) == 2
