"""Tests for the token bucket shared by research and LLM calls."""
from __future__ import annotations

import asyncio
import time

import pytest

from realitycheck.errors import RateLimitTimeout
from realitycheck.ratelimit import TokenBucket
from realitycheck.utils import Deadline


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestReserve:
    def test_burst_is_free_then_next_waits_one_interval(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2.0, burst=4, clock=clock)
        waits = [bucket.reserve() for _ in range(5)]
        assert waits[:4] == [0.0, 0.0, 0.0, 0.0]
        assert waits[4] == pytest.approx(0.5)

    def test_backlog_accumulates_in_reservation_order(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=10.0, burst=1, clock=clock)
        assert bucket.reserve() == 0.0
        assert bucket.reserve() == pytest.approx(0.1)
        assert bucket.reserve() == pytest.approx(0.2)

    def test_refill_is_capped_at_burst(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=5.0, burst=3, clock=clock)
        for _ in range(3):
            bucket.reserve()
        clock.advance(100)
        assert bucket.available == pytest.approx(3.0)

    def test_deadline_too_short_raises_and_returns_tokens(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=1.0, burst=1, clock=clock)
        bucket.reserve()
        before = bucket.available
        with pytest.raises(RateLimitTimeout) as exc_info:
            bucket.reserve(deadline=Deadline(0.5, clock=clock))
        assert exc_info.value.wait == pytest.approx(1.0)
        assert exc_info.value.remaining == pytest.approx(0.5)
        assert bucket.available == pytest.approx(before)

    def test_deadline_long_enough_is_granted(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=1.0, burst=1, clock=clock)
        bucket.reserve()
        assert bucket.reserve(deadline=Deadline(2.0, clock=clock)) == pytest.approx(1.0)

    def test_more_than_burst_is_rejected(self):
        bucket = TokenBucket(rate=1.0, burst=2)
        with pytest.raises(ValueError):
            bucket.reserve(3)

    @pytest.mark.parametrize("rate,burst", [(0, 1), (-1, 1), (1, 0)])
    def test_invalid_configuration(self, rate, burst):
        with pytest.raises(ValueError):
            TokenBucket(rate=rate, burst=burst)


class TestAcquire:
    @pytest.mark.asyncio
    async def test_burst_plus_one_is_delayed_by_one_interval(self):
        rate, burst = 20.0, 3
        bucket = TokenBucket(rate=rate, burst=burst)
        start = time.monotonic()
        for _ in range(burst):
            await bucket.acquire()
        assert time.monotonic() - start < 1 / rate
        await bucket.acquire()
        assert time.monotonic() - start >= (1 / rate) * 0.9

    @pytest.mark.asyncio
    async def test_concurrent_callers_are_spread_out(self):
        bucket = TokenBucket(rate=50.0, burst=1)
        stamps: list[float] = []

        async def worker():
            await bucket.acquire()
            stamps.append(time.monotonic())

        start = time.monotonic()
        await asyncio.gather(*(worker() for _ in range(4)))
        # 1 free token, then three more at 20ms intervals
        assert max(stamps) - start >= 0.06 * 0.9

    @pytest.mark.asyncio
    async def test_expired_deadline_raises_without_sleeping(self):
        bucket = TokenBucket(rate=1.0, burst=1)
        await bucket.acquire()
        start = time.monotonic()
        with pytest.raises(RateLimitTimeout):
            await bucket.acquire(deadline=Deadline(0.0))
        assert time.monotonic() - start < 0.1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_hands_back_its_reservation(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=1.0, burst=1, clock=clock)
        await bucket.acquire()

        waiter = asyncio.create_task(bucket.acquire())
        await asyncio.sleep(0)
        assert bucket.available == pytest.approx(-1.0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert bucket.available == pytest.approx(0.0)
        assert bucket.reserve() == pytest.approx(1.0)
