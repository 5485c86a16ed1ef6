"""
Spend-Rate Monitor

Rolling-window spend total across all runs in the process. When the
window total passes the threshold the monitor trips: runs registered
after the trip are denied, runs already in flight keep going.
"""

import time
from collections import deque
from collections.abc import Callable

from tasktree.observability.logging import get_logger

logger = get_logger("tasktree.budget.anomaly")


class SpendRateMonitor:
    """Sliding-window spend accumulator with a trip point."""

    def __init__(
        self,
        threshold: float,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: deque[tuple[float, float]] = deque()
        self._total = 0.0
        self.tripped_at: float | None = None

    def _evict(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._entries and self._entries[0][0] < horizon:
            _, amount = self._entries.popleft()
            self._total -= amount
        if not self._entries:
            self._total = 0.0

    def record(self, amount: float) -> bool:
        """Add spend; returns True if this record tripped the monitor."""
        if amount <= 0:
            return False
        now = self._clock()
        self._entries.append((now, amount))
        self._total += amount
        self._evict(now)

        if self.tripped_at is None and self._total > self.threshold:
            self.tripped_at = now
            logger.warning(
                "Spend-rate anomaly detected",
                window_total=round(self._total, 6),
                threshold=self.threshold,
                window_seconds=self.window_seconds,
            )
            return True
        return False

    def window_total(self) -> float:
        self._evict(self._clock())
        return self._total

    @property
    def tripped(self) -> bool:
        return self.tripped_at is not None

    def blocks(self, registered_at: float) -> bool:
        """Whether a run registered at `registered_at` is denied."""
        return self.tripped_at is not None and registered_at >= self.tripped_at

    def now(self) -> float:
        return self._clock()

    def reset(self) -> None:
        """Operator acknowledgement: clear the trip and the window."""
        self._entries.clear()
        self._total = 0.0
        self.tripped_at = None
