from __future__ import annotations

import asyncio
import logging
import threading
import time

from realitycheck.errors import RateLimitTimeout
from realitycheck.utils import Deadline

log = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket shared by every caller of the research and LLM providers.

    Capacity is ``burst`` and tokens refill continuously at ``rate`` per
    second. Callers reserve tokens under a short lock (the balance may go
    negative) and then sleep until their reservation matures, so grants
    follow reservation order and nobody waits longer than the backlog ahead
    of them. A reservation that would outlive the caller's deadline is
    handed back and ``RateLimitTimeout`` is raised without sleeping.
    """

    def __init__(self, rate: float, burst: int, clock=time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = int(burst)
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._updated = clock()

    def _refill(self, now: float) -> None:
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
            self._updated = now

    def reserve(self, n: int = 1, deadline: Deadline | None = None) -> float:
        """Reserve *n* tokens and return how long the caller must wait."""
        if n > self.burst:
            raise ValueError(f"cannot acquire {n} tokens from a bucket of {self.burst}")
        with self._lock:
            self._refill(self._clock())
            self._tokens -= n
            wait = 0.0 if self._tokens >= 0 else -self._tokens / self.rate
            remaining = deadline.remaining() if deadline is not None else None
            if remaining is not None and wait > remaining:
                self._tokens += n
                raise RateLimitTimeout(wait, remaining)
        return wait

    def release(self, n: int = 1) -> None:
        """Hand back *n* reserved tokens that were never used."""
        with self._lock:
            self._refill(self._clock())
            self._tokens = min(float(self.burst), self._tokens + n)

    async def acquire(self, n: int = 1, deadline: Deadline | None = None) -> None:
        wait = self.reserve(n, deadline)
        if wait > 0:
            log.debug("Rate limiter: waiting %.3fs for %d token(s)", wait, n)
            try:
                await asyncio.sleep(wait)
            except asyncio.CancelledError:
                self.release(n)
                raise

    @property
    def available(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens
