"""Token bucket rate limiter shared by concurrent fetch tasks."""

from typing import Awaitable, Callable, Optional
import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Asyncio token bucket.

    Tokens refill continuously at ``rate`` per second up to ``capacity``.
    ``acquire()`` is safe to call from many tasks at once: waiters are
    served one at a time under a lock, so no token is handed out twice.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._updated = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Wait until ``tokens`` are available and take them."""
        if tokens > self.capacity:
            raise ValueError("cannot acquire more tokens than the bucket holds")

        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return
                wait_time = (tokens - self._tokens) / self.rate
                logger.debug(f"Rate limiter waiting {wait_time:.3f}s")
                await self._sleep(wait_time)

    def drain(self) -> None:
        """Empty the bucket, e.g. after the server reported a rate limit."""
        self._refill()
        self._tokens = 0.0
