"""Sliding-window limiter on job starts across a worker pool."""

import asyncio
import time
from collections import deque
from collections.abc import Callable


class SlidingWindowRateLimiter:
    """
    Allows at most `max_events` acquisitions in any `window_seconds` span.

    Usage:
        limiter = SlidingWindowRateLimiter(max_events=2, window_seconds=1.0)
        await limiter.acquire()
    """

    def __init__(
        self,
        max_events: int,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        self._max = max_events
        self._window = window_seconds
        self._clock = clock
        self._stamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def max_events(self) -> int:
        return self._max

    def _evict(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self._window:
            self._stamps.popleft()

    def try_acquire(self) -> bool:
        now = self._clock()
        self._evict(now)
        if len(self._stamps) >= self._max:
            return False
        self._stamps.append(now)
        return True

    def wait_time(self) -> float:
        """Seconds until the next slot frees up (0 if one is free now)."""
        now = self._clock()
        self._evict(now)
        if len(self._stamps) < self._max:
            return 0.0
        return max(0.0, self._window - (now - self._stamps[0]))

    async def acquire(self) -> None:
        async with self._lock:
            while not self.try_acquire():
                await asyncio.sleep(self.wait_time() or 0.001)
