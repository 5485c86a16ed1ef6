"""
Core Types

Fundamental data structures shared across the runtime.
These types define the vocabulary of a task tree.

Design decisions:
- Dataclasses for internal value types, pydantic only at persistence/API edges
- Str-enums so states serialize without conversion
- Terminal run states are values, never exceptions
- User-visible reasons come from a fixed vocabulary
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def utc_now() -> datetime:
    """Current UTC timestamp."""
    return datetime.now(tz=UTC)


def new_id(prefix: str | None = None) -> str:
    """Generate a unique identifier, optionally namespaced."""
    value = str(uuid4())
    return f"{prefix}-{value}" if prefix else value


class RunState(str, Enum):
    """
    Task run state machine.

    RUNNING → SUCCEEDED | FAILED | BUDGET_EXCEEDED | TURN_EXCEEDED | TIMED_OUT
    """

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BUDGET_EXCEEDED = "budget_exceeded"
    TURN_EXCEEDED = "turn_exceeded"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self is not RunState.RUNNING


class CostClass(str, Enum):
    """Coarse cost buckets used to estimate a capability call before it runs."""

    FREE = "free"
    LOOKUP = "lookup"
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    DELEGATION = "delegation"


# Reason codes → human-readable text. Event messages only ever use these.
REASON_MESSAGES: dict[str, str] = {
    "cancelled": "The run was cancelled.",
    "budget_exceeded": "The spending limit for this run was reached.",
    "session_budget_exceeded": "The spending limit for this session was reached.",
    "turn_exceeded": "The run reached its maximum number of steps.",
    "timed_out": "The run took too long and was stopped.",
    "timeout": "The job took too long and was stopped.",
    "capability_failed": "A required operation failed.",
    "provider_unavailable": "The reasoning service is temporarily unavailable.",
    "provider_error": "The reasoning service returned an invalid response.",
    "scope_violation": "An operation outside the permitted set was requested.",
    "unknown_capability": "An unknown operation was requested.",
    "insufficient_credits": "Not enough credits for this operation.",
    "credit_check_failed": "Credits could not be verified.",
    "spend_anomaly": "Spending is unusually high; new runs are paused.",
    "cost_guard": "The session cost limit was exceeded.",
    "delegation_depth": "Too many nested delegations.",
    "internal_error": "Something went wrong. Please try again.",
}


def reason_message(reason: str | None) -> str:
    """Resolve a reason code to its fixed human-readable message."""
    if reason is None:
        return ""
    return REASON_MESSAGES.get(reason, REASON_MESSAGES["internal_error"])


class CancellationToken:
    """
    Cooperative cancellation flag shared between a job and its runs.

    The engine checks it before every turn and every capability call.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class CapabilityRequest:
    """A capability invocation requested by the reasoning provider."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=lambda: new_id("call"))

    def to_dict(self) -> dict[str, Any]:
        return {"call_id": self.call_id, "name": self.name, "arguments": self.arguments}


@dataclass
class Observation:
    """Outcome of a capability call, fed back to the provider on the next turn."""

    call_id: str
    name: str
    result: Any = None
    error: str | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"call_id": self.call_id, "name": self.name}
        if self.error is None:
            data["result"] = self.result
        else:
            data["error"] = self.error
            data["retryable"] = self.retryable
        return data


@dataclass
class TaskRun:
    """
    One execution of the reasoning loop.

    Mutated only by the engine loop that owns it.
    """

    run_id: str
    capability_scope: frozenset[str]
    parent_run_id: str | None = None
    root_run_id: str | None = None
    session_key: str | None = None
    depth: int = 0

    turns: int = 0
    spend: float = 0.0
    state: RunState = RunState.RUNNING
    result: Any = None
    reason: str | None = None

    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None

    @property
    def is_top_level(self) -> bool:
        return self.parent_run_id is None


@dataclass
class TerminalResult:
    """
    Final outcome of a run.

    Non-success states carry a reason code from REASON_MESSAGES.
    `retryable` tells the job layer whether another attempt may help.
    """

    run_id: str
    state: RunState
    result: Any = None
    reason: str | None = None
    retryable: bool = False

    turns: int = 0
    spend: float = 0.0
    conversation_handle: str | None = None
    parent_run_id: str | None = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.SUCCEEDED

    @property
    def message(self) -> str:
        return reason_message(self.reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "result": self.result,
            "reason": self.reason,
            "message": self.message,
            "turns": self.turns,
            "spend": round(self.spend, 6),
        }


class ResponseKind(str, Enum):
    """What the provider decided on a turn."""

    FINAL_ANSWER = "final_answer"
    CAPABILITY_REQUESTS = "capability_requests"


@dataclass
class ReasoningRequest:
    """
    One turn submitted to the reasoning provider.

    On the first turn `instructions` carries the step instructions.
    Later turns carry only the observations from the previous turn;
    the provider keeps history behind `conversation_handle`.
    """

    run_id: str
    turn: int
    capabilities: list[dict[str, Any]]
    conversation_handle: str | None = None
    system_instructions: str | None = None
    instructions: str | None = None
    observations: list[Observation] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "turn": self.turn,
            "conversation_handle": self.conversation_handle,
            "system": self.system_instructions,
            "instructions": self.instructions,
            "observations": [o.to_dict() for o in self.observations],
            "capabilities": self.capabilities,
            "metadata": self.metadata,
        }


@dataclass
class ProviderResponse:
    """Provider decision for a turn plus the cost it reported."""

    kind: ResponseKind
    conversation_handle: str | None = None
    payload: Any = None
    requests: list[CapabilityRequest] = field(default_factory=list)
    cost: float = 0.0

    @classmethod
    def final(
        cls,
        payload: Any,
        *,
        conversation_handle: str | None = None,
        cost: float = 0.0,
    ) -> "ProviderResponse":
        return cls(
            kind=ResponseKind.FINAL_ANSWER,
            payload=payload,
            conversation_handle=conversation_handle,
            cost=cost,
        )

    @classmethod
    def calls(
        cls,
        requests: list[CapabilityRequest],
        *,
        conversation_handle: str | None = None,
        cost: float = 0.0,
    ) -> "ProviderResponse":
        return cls(
            kind=ResponseKind.CAPABILITY_REQUESTS,
            requests=list(requests),
            conversation_handle=conversation_handle,
            cost=cost,
        )

    @property
    def is_final(self) -> bool:
        return self.kind == ResponseKind.FINAL_ANSWER
