"""
Scripted Reasoning Provider

A deterministic, offline provider for tests, CI and demos.

Design decisions:
- Each run consumes its own copy of a turn script
- Scripts can be selected by regex against the run's first-turn instructions,
  so parent and child runs can follow different scripts
- Every request is recorded for assertions
- NEVER makes external network calls
"""

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tasktree.core.types import CapabilityRequest, ProviderResponse, ReasoningRequest, new_id
from tasktree.reasoning.provider import BaseReasoningProvider


@dataclass
class ScriptedTurn:
    """One scripted provider decision."""

    final: Any = None
    calls: list[dict[str, Any]] = field(default_factory=list)
    cost: float = 0.0
    delay: float = 0.0
    raises: Exception | None = None

    def to_response(self, handle: str) -> ProviderResponse:
        if self.calls:
            requests = [
                CapabilityRequest(
                    name=call["name"],
                    arguments=dict(call.get("arguments", {})),
                    call_id=call.get("call_id") or new_id("call"),
                )
                for call in self.calls
            ]
            return ProviderResponse.calls(requests, conversation_handle=handle, cost=self.cost)
        return ProviderResponse.final(self.final, conversation_handle=handle, cost=self.cost)


Handler = Callable[[ReasoningRequest], Awaitable[ProviderResponse]]


class ScriptedReasoningProvider(BaseReasoningProvider):
    """
    Deterministic provider driven by turn scripts.

    Usage:
        provider = ScriptedReasoningProvider(
            script=[ScriptedTurn(calls=[{"name": "lookup", "arguments": {"q": "x"}}]),
                    ScriptedTurn(final={"ok": True})],
            scripts={r"social": [ScriptedTurn(final={"dna": "..."})]},
        )
    """

    def __init__(
        self,
        script: list[ScriptedTurn] | None = None,
        *,
        scripts: dict[str, list[ScriptedTurn]] | None = None,
        handler: Handler | None = None,
        fallback: ScriptedTurn | None = None,
        max_retries: int = 0,
        retry_delay: float = 0.0,
    ):
        super().__init__(max_retries=max_retries, retry_delay=retry_delay)
        self._script = list(script or [])
        self._scripts = {re.compile(p, re.IGNORECASE): list(s) for p, s in (scripts or {}).items()}
        self._handler = handler
        self._fallback = fallback or ScriptedTurn(final={"status": "done"})
        self._cursors: dict[str, list[ScriptedTurn]] = {}
        self._handles: dict[str, str] = {}
        self.requests: list[ReasoningRequest] = []

    @property
    def provider_name(self) -> str:
        return "scripted"

    def requests_for(self, run_id: str) -> list[ReasoningRequest]:
        return [r for r in self.requests if r.run_id == run_id]

    def _select_script(self, request: ReasoningRequest) -> list[ScriptedTurn]:
        text = request.instructions or ""
        for pattern, turns in self._scripts.items():
            if pattern.search(text):
                return list(turns)
        return list(self._script)

    async def _do_submit(self, request: ReasoningRequest) -> ProviderResponse:
        self.requests.append(request)

        if self._handler is not None:
            return await self._handler(request)

        handle = (
            request.conversation_handle
            or self._handles.get(request.run_id)
            or new_id("conv")
        )
        self._handles[request.run_id] = handle

        if request.run_id not in self._cursors:
            self._cursors[request.run_id] = self._select_script(request)
        remaining = self._cursors[request.run_id]
        turn = remaining.pop(0) if remaining else self._fallback

        if turn.delay:
            await asyncio.sleep(turn.delay)
        if turn.raises is not None:
            raise turn.raises

        return turn.to_response(handle)
