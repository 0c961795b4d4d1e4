from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from reelwatch.services import cancellation
from reelwatch.services.cancellation import CancelScope


class TokenBucketRateLimiter:
    """Token bucket refilled at ``rate_per_second`` and holding at most ``burst`` tokens.

    Waiters are served one at a time under an ``asyncio.Lock``, so a waiter
    that is cancelled while sleeping never consumes a token.
    """

    def __init__(
        self,
        rate_per_second: float,
        *,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self._rate = float(rate_per_second)
        self._burst = int(burst)
        self._clock = clock
        self._tokens = float(burst)
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    @property
    def rate_per_second(self) -> float:
        return self._rate

    @property
    def burst(self) -> int:
        return self._burst

    @property
    def min_interval_seconds(self) -> float:
        return 1.0 / self._rate

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated_at, 0.0)
        self._updated_at = now
        self._tokens = min(float(self._burst), self._tokens + elapsed * self._rate)

    def remaining_wait_seconds(self) -> float:
        self._refill()
        if self._tokens >= 1.0:
            return 0.0
        return (1.0 - self._tokens) / self._rate

    def try_acquire(self) -> bool:
        if self._lock.locked():
            return False
        self._refill()
        if self._tokens < 1.0:
            return False
        self._tokens -= 1.0
        return True

    async def acquire(self, cancel: CancelScope | None = None) -> None:
        cancellation.raise_if_cancelled(cancel)
        async with self._lock:
            while True:
                wait_seconds = self.remaining_wait_seconds()
                if wait_seconds <= 0:
                    self._tokens -= 1.0
                    return
                await cancellation.sleep(wait_seconds, cancel)
