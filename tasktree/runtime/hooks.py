"""
Lifecycle Hook Bus

Typed lifecycle notifications for every run in a task tree.

Design decisions:
- Observers run in subscription order, one at a time
- Sync and async observers are both accepted
- An observer that raises is logged and skipped; the run never sees it
- Observers receive a HookEvent value, never the engine's mutable state
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from tasktree.core.types import RunState, utc_now
from tasktree.observability.logging import get_logger

logger = get_logger("tasktree.runtime.hooks")


class HookKind(str, Enum):
    RUN_STARTED = "run_started"
    PRE_CALL = "pre_call"
    POST_CALL = "post_call"
    CALL_FAILED = "call_failed"
    RUN_ENDED = "run_ended"


@dataclass
class HookEvent:
    """Payload delivered to observers."""

    kind: HookKind
    run_id: str
    root_run_id: str | None = None
    parent_run_id: str | None = None
    session_key: str | None = None
    depth: int = 0

    # Capability calls
    capability: str | None = None
    call_id: str | None = None
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str | None = None
    retryable: bool = False
    cost: float = 0.0

    # Run end
    state: RunState | None = None
    reason: str | None = None
    spend: float = 0.0
    turns: int = 0

    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def is_top_level(self) -> bool:
        return self.parent_run_id is None

    @property
    def job_id(self) -> str | None:
        return self.metadata.get("job_id")


Observer = Callable[[HookEvent], Awaitable[None] | None]


class HookBus:
    """
    Ordered, error-isolated publish/subscribe for lifecycle events.

    Usage:
        bus = HookBus()
        bus.subscribe(HookKind.POST_CALL, on_post_call)
        await bus.fire(HookEvent(kind=HookKind.POST_CALL, run_id=...))
    """

    def __init__(self) -> None:
        self._observers: dict[HookKind, list[Observer]] = {kind: [] for kind in HookKind}
        self.errors = 0

    def subscribe(self, kind: HookKind, observer: Observer) -> None:
        self._observers[kind].append(observer)

    def subscribe_all(self, observer: Observer) -> None:
        for kind in HookKind:
            self._observers[kind].append(observer)

    def unsubscribe(self, kind: HookKind, observer: Observer) -> bool:
        try:
            self._observers[kind].remove(observer)
            return True
        except ValueError:
            return False

    def observers(self, kind: HookKind) -> list[Observer]:
        return list(self._observers[kind])

    async def fire(self, event: HookEvent) -> None:
        """Deliver `event` to every observer of its kind, in order."""
        for observer in list(self._observers[event.kind]):
            try:
                outcome = observer(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self.errors += 1
                logger.error(
                    "Hook observer failed",
                    error=e,
                    hook=event.kind.value,
                    observer=getattr(observer, "__qualname__", repr(observer)),
                    run_id=event.run_id,
                )
