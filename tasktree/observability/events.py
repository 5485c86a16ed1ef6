"""
Progress Event Channel

Ordered, per-session progress events for external subscribers.

Design decisions:
- Events are pydantic models so they serialize straight to SSE / pub-sub
- Messages come from the fixed reason vocabulary, never exception text
- Results are sanitized before leaving the process
- In-memory channel uses bounded per-subscriber queues (drop-oldest)
- Redis channel uses pub/sub plus a capped history list for late subscribers
"""

import asyncio
import json
from collections import defaultdict, deque
from collections.abc import AsyncIterator
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tasktree.core.types import utc_now
from tasktree.observability.logging import get_logger

logger = get_logger("tasktree.events")


class ProgressEventKind(str, Enum):
    SESSION_STARTED = "session_started"
    TOOL_START = "tool_start"
    TOOL_COMPLETE = "tool_complete"
    TOOL_ERROR = "tool_error"
    SESSION_COMPLETE = "session_complete"
    SESSION_FAILED = "session_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressEventKind.SESSION_COMPLETE, ProgressEventKind.SESSION_FAILED)


class ProgressEvent(BaseModel):
    """One progress notification for a session."""

    session_key: str
    run_id: str
    kind: ProgressEventKind
    job_id: str | None = None
    tool: str | None = None
    progress_percent: int | None = None
    message: str | None = None
    result: Any = None
    timestamp: datetime = Field(default_factory=utc_now)
    sequence: int = 0


_SENSITIVE_KEYS = frozenset(
    {
        "apikey",
        "api_key",
        "internalurl",
        "internal_url",
        "stacktrace",
        "stack_trace",
        "rawresponse",
        "raw_response",
        "password",
        "secret",
        "token",
        "authorization",
    }
)


def sanitize_result(value: Any, _depth: int = 0) -> Any:
    """Strip credentials and internals from a result before it is published."""
    if _depth > 8:
        return None
    if isinstance(value, dict):
        return {
            k: sanitize_result(v, _depth + 1)
            for k, v in value.items()
            if str(k).lower() not in _SENSITIVE_KEYS
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_result(v, _depth + 1) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class InMemoryEventChannel:
    """
    Process-local event channel.

    Each subscriber gets its own bounded queue; when a slow subscriber's
    queue is full its oldest event is dropped so publishers never block.
    """

    def __init__(self, buffer_size: int = 256, history_size: int = 200):
        self._buffer_size = buffer_size
        self._subscribers: dict[str, list[asyncio.Queue[ProgressEvent]]] = defaultdict(list)
        self._history: dict[str, deque[ProgressEvent]] = defaultdict(
            lambda: deque(maxlen=history_size)
        )
        self._sequence: dict[str, int] = defaultdict(int)
        self.dropped = 0

    async def publish(self, event: ProgressEvent) -> None:
        self._sequence[event.session_key] += 1
        event.sequence = self._sequence[event.session_key]
        self._history[event.session_key].append(event)

        for queue in list(self._subscribers.get(event.session_key, [])):
            if queue.full():
                queue.get_nowait()
                self.dropped += 1
            queue.put_nowait(event)

    def history(self, session_key: str) -> list[ProgressEvent]:
        return list(self._history.get(session_key, ()))

    async def subscribe(
        self,
        session_key: str,
        *,
        replay: bool = False,
        until_terminal: bool = True,
    ) -> AsyncIterator[ProgressEvent]:
        """Yield events for a session in publish order."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self._buffer_size)
        if replay:
            for event in self._history.get(session_key, ()):
                if queue.full():
                    queue.get_nowait()
                queue.put_nowait(event)
        self._subscribers[session_key].append(queue)
        try:
            while True:
                event = await queue.get()
                yield event
                if until_terminal and event.kind.is_terminal:
                    return
        finally:
            subscribers = self._subscribers.get(session_key)
            if subscribers and queue in subscribers:
                subscribers.remove(queue)
                if not subscribers:
                    del self._subscribers[session_key]

    async def close(self) -> None:
        self._subscribers.clear()


class RedisEventChannel:
    """
    Redis pub/sub event channel shared by API and worker processes.

    Events are also pushed to a capped list so a subscriber that
    connects late can replay what it missed.
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "tasktree:",
        history_size: int = 200,
        history_ttl_seconds: int = 86400,
    ):
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._history_size = history_size
        self._history_ttl = history_ttl_seconds
        self._client = None

    async def _get_client(self):
        """Lazy initialization of Redis client."""
        if self._client is None:
            import redis.asyncio as redis

            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _channel(self, session_key: str) -> str:
        return f"{self._key_prefix}events:{session_key}"

    def _history_key(self, session_key: str) -> str:
        return f"{self._key_prefix}events:history:{session_key}"

    def _sequence_key(self, session_key: str) -> str:
        return f"{self._key_prefix}events:seq:{session_key}"

    async def publish(self, event: ProgressEvent) -> None:
        client = await self._get_client()
        event.sequence = int(await client.incr(self._sequence_key(event.session_key)))
        data = event.model_dump_json()

        history_key = self._history_key(event.session_key)
        async with client.pipeline(transaction=True) as pipe:
            pipe.rpush(history_key, data)
            pipe.ltrim(history_key, -self._history_size, -1)
            pipe.expire(history_key, self._history_ttl)
            pipe.expire(self._sequence_key(event.session_key), self._history_ttl)
            pipe.publish(self._channel(event.session_key), data)
            await pipe.execute()

    async def history(self, session_key: str) -> list[ProgressEvent]:
        client = await self._get_client()
        raw = await client.lrange(self._history_key(session_key), 0, -1)
        return [ProgressEvent.model_validate_json(item) for item in raw]

    async def subscribe(
        self,
        session_key: str,
        *,
        replay: bool = False,
        until_terminal: bool = True,
    ) -> AsyncIterator[ProgressEvent]:
        client = await self._get_client()
        pubsub = client.pubsub()
        await pubsub.subscribe(self._channel(session_key))
        last_sequence = 0
        try:
            if replay:
                for event in await self.history(session_key):
                    last_sequence = event.sequence
                    yield event
                    if until_terminal and event.kind.is_terminal:
                        return

            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = ProgressEvent.model_validate_json(message["data"])
                except ValueError as e:
                    logger.warning("Discarding malformed event", error_type=type(e).__name__)
                    continue
                if event.sequence <= last_sequence:
                    continue
                last_sequence = event.sequence
                yield event
                if until_terminal and event.kind.is_terminal:
                    return
        finally:
            await pubsub.unsubscribe(self._channel(session_key))
            await pubsub.aclose()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


def format_sse(event: ProgressEvent) -> str:
    """Format an event as a Server-Sent Events frame."""
    payload = json.loads(event.model_dump_json())
    lines = [
        f"id: {event.sequence}",
        f"event: {event.kind.value}",
        f"data: {json.dumps(payload)}",
        "",
    ]
    return "\n".join(lines) + "\n"
