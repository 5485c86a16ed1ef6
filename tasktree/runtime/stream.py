"""
Loop Channel

Bounded, ordered hand-off of loop events from a running engine to
a consumer. The producer waits when the buffer is full.
"""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from tasktree.core.types import utc_now


class LoopEventKind(str, Enum):
    RUN_STARTED = "run_started"
    TURN_STARTED = "turn_started"
    PROVIDER_RESPONDED = "provider_responded"
    CALL_STARTED = "call_started"
    CALL_COMPLETED = "call_completed"
    CALL_FAILED = "call_failed"
    RUN_ENDED = "run_ended"


@dataclass
class LoopEvent:
    """
    One step of a run as seen by a stream consumer.

    The RUN_ENDED event carries the TerminalResult in `data["result"]`.
    """

    kind: LoopEventKind
    run_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


_CLOSED = object()


class LoopChannel:
    """Bounded FIFO of LoopEvents with explicit close."""

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: LoopEvent) -> None:
        if self._closed:
            return
        await self._queue.put(event)

    def close(self) -> None:
        """Mark the channel finished. Never blocks."""
        if self._closed:
            return
        self._closed = True
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[LoopEvent]:
        while not (self._closed and self._queue.empty()):
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
