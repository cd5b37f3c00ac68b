"""
Client-side rate limiting for Intercom requests.

A token bucket refills at `rate_per_second` up to `burst` tokens. Every
request (list pages, probes, conversation details) takes one token, so
bounded-parallel thread batches cannot exceed the configured request rate.
"""

import asyncio
import time
from typing import Optional, Protocol


class RateLimiter(Protocol):
    async def acquire(self) -> None:
        ...


class NoopRateLimiter:
    """Limiter that never waits (tests, or MAX_RPS=0)."""

    async def acquire(self) -> None:
        return None


class TokenBucketRateLimiter:
    """Async token bucket shared by all requests of one client."""

    def __init__(self, rate_per_second: float, burst: Optional[int] = None):
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.rate_per_second = rate_per_second
        self.burst = burst if burst is not None else max(1, int(rate_per_second))
        self.tokens = float(self.burst)
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_update
        self.tokens = min(self.burst, self.tokens + elapsed * self.rate_per_second)
        self.last_update = now

    async def acquire(self) -> None:
        """Wait until a token is available, then take it."""
        async with self._lock:
            self._refill()
            if self.tokens < 1:
                wait = (1 - self.tokens) / self.rate_per_second
                await asyncio.sleep(wait)
                self._refill()
            self.tokens -= 1


def build_rate_limiter(max_rps: float) -> "RateLimiter":
    """Token bucket for a positive MAX_RPS, otherwise a no-op limiter."""
    if max_rps and max_rps > 0:
        return TokenBucketRateLimiter(max_rps)
    return NoopRateLimiter()
