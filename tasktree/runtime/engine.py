"""
Reasoning-Loop Engine

The SINGLE orchestration point for run execution: think → act → observe.
Top-level runs and delegated child runs use the same loop.

Design decisions:
- Owns the run lifecycle (RUNNING → one terminal state)
- Every provider turn and every capability call is authorized by the
  BudgetGovernor first and committed after
- Terminal states are values; the loop never raises for budget,
  turn, time or capability exhaustion
- Lifecycle hooks bracket every run; observers never affect the loop
- Cancellation is checked before every turn and every call
- NEVER knows about HTTP, persistence or provider internals

Debugging at 3AM:
- Run id, root run id and session key ride on every log line
- Every denial carries a reason code from REASON_MESSAGES
"""

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from tasktree.budget.governor import Authorization, BudgetGovernor, CommitResult, DenialKind
from tasktree.core.exceptions import (
    CapabilityNotFoundError,
    ProviderResponseError,
    ProviderUnavailableError,
    ScopeViolation,
)
from tasktree.core.interfaces import ReasoningProviderProtocol
from tasktree.core.types import (
    CapabilityRequest,
    Observation,
    ReasoningRequest,
    RunState,
    TaskRun,
    TerminalResult,
    reason_message,
    utc_now,
)
from tasktree.observability.logging import get_logger
from tasktree.observability.metrics import MetricsCollector
from tasktree.runtime.context import CapabilityContext
from tasktree.runtime.hooks import HookBus, HookEvent, HookKind
from tasktree.runtime.spawner import TaskSpawner
from tasktree.runtime.spec import TaskSpec
from tasktree.runtime.stream import LoopChannel, LoopEvent, LoopEventKind
from tasktree.tools.executor import CapabilityExecutor, CapabilityOutcome
from tasktree.tools.registry import CapabilityDefinition
from tasktree.tools.scoping import check_scope

logger = get_logger("tasktree.runtime.engine")


@dataclass
class _LoopState:
    """Mutable per-run bookkeeping the loop threads through its helpers."""

    handle: str | None = None
    partial: Any = None
    retryable: bool = False


class ReasoningEngine:
    """
    Drives runs to a terminal state.

    Usage:
        engine = ReasoningEngine(provider, executor, governor, hooks=bus)
        result = await engine.run(spec)

        async for event in engine.stream(spec):
            ...
    """

    def __init__(
        self,
        provider: ReasoningProviderProtocol,
        executor: CapabilityExecutor,
        governor: BudgetGovernor,
        *,
        hooks: HookBus | None = None,
        metrics: MetricsCollector | None = None,
        parallel_calls: bool = False,
        provider_turn_estimate: float = 0.02,
        channel_size: int = 256,
        max_delegation_depth: int = 2,
        child_turn_limit: int = 15,
        child_budget: float = 0.5,
    ):
        self._provider = provider
        self._executor = executor
        self._governor = governor
        self._hooks = hooks or HookBus()
        self._metrics = metrics
        self._parallel_calls = parallel_calls
        self._turn_estimate = provider_turn_estimate
        self._channel_size = channel_size
        self._spawner = TaskSpawner(
            self,
            max_depth=max_delegation_depth,
            default_turn_limit=child_turn_limit,
            default_budget=child_budget,
        )

    @property
    def hooks(self) -> HookBus:
        return self._hooks

    @property
    def governor(self) -> BudgetGovernor:
        return self._governor

    @property
    def spawner(self) -> TaskSpawner:
        return self._spawner

    # =========================================================================
    # Public API
    # =========================================================================

    async def run(self, spec: TaskSpec) -> TerminalResult:
        """Execute a run to completion and return its terminal result."""
        return await self._execute(spec, None)

    async def stream(self, spec: TaskSpec) -> AsyncIterator[LoopEvent]:
        """
        Execute a run, yielding loop events as they happen.

        The final event is RUN_ENDED with the TerminalResult in
        `data["result"]`. Closing the iterator early cancels the run.
        """
        channel = LoopChannel(self._channel_size)

        async def _produce() -> TerminalResult:
            try:
                return await self._execute(spec, channel)
            finally:
                channel.close()

        task = asyncio.create_task(_produce())
        try:
            async for event in channel:
                yield event
            await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    async def _execute(self, spec: TaskSpec, channel: LoopChannel | None) -> TerminalResult:
        start_time = time.perf_counter()

        account = await self._governor.register_run(
            spec.run_id,
            ceiling=spec.budget,
            parent_run_id=spec.parent_run_id,
            session_ceiling=spec.session_ceiling,
            timeout_seconds=spec.timeout_seconds,
            credit_account=spec.credit_account,
        )
        run = TaskRun(
            run_id=spec.run_id,
            capability_scope=frozenset(spec.capability_scope),
            parent_run_id=spec.parent_run_id,
            root_run_id=account.root_run_id,
            session_key=spec.session_key,
            depth=spec.depth,
        )
        state = _LoopState(handle=spec.resume_handle)

        with logger.context(run_id=run.run_id, root_run_id=run.root_run_id, session_key=run.session_key):
            logger.info(
                "Run started",
                parent_run_id=run.parent_run_id,
                depth=run.depth,
                turn_limit=spec.turn_limit,
                budget=spec.budget,
                resumed=spec.resume_handle is not None,
            )
            await self._hooks.fire(self._event(HookKind.RUN_STARTED, run, spec))
            await self._emit(channel, LoopEventKind.RUN_STARTED, run, depth=run.depth)

            try:
                await self._loop(run, spec, state, channel)
            except asyncio.CancelledError:
                self._finish(run, RunState.FAILED, reason=self._cancel_reason(spec))
                logger.warning("Run abandoned", turns=run.turns)
                try:
                    await self._hooks.fire(
                        self._event(
                            HookKind.RUN_ENDED,
                            run,
                            spec,
                            state=run.state,
                            reason=run.reason,
                            result=run.result,
                            spend=run.spend,
                            turns=run.turns,
                        )
                    )
                finally:
                    await self._governor.release(run.run_id)
                raise
            except Exception:
                logger.exception("Run failed unexpectedly", turns=run.turns)
                self._finish(run, RunState.FAILED, reason="internal_error")

            snapshot = await self._governor.snapshot(run.run_id)
            run.spend = snapshot.spent + snapshot.descendant_spent

            result = TerminalResult(
                run_id=run.run_id,
                state=run.state,
                result=run.result,
                reason=run.reason,
                retryable=state.retryable,
                turns=run.turns,
                spend=run.spend,
                conversation_handle=state.handle,
                parent_run_id=run.parent_run_id,
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )

            await self._hooks.fire(
                self._event(
                    HookKind.RUN_ENDED,
                    run,
                    spec,
                    state=result.state,
                    reason=result.reason,
                    result=result.result,
                    spend=result.spend,
                    turns=result.turns,
                )
            )
            await self._emit(channel, LoopEventKind.RUN_ENDED, run, result=result)
            await self._governor.release(run.run_id)

            logger.info(
                "Run ended",
                state=result.state.value,
                reason=result.reason,
                turns=result.turns,
                spend=round(result.spend, 6),
                duration_ms=round(result.duration_ms, 1),
            )
            if self._metrics:
                self._metrics.counter("runs_total", "Finished runs by state").inc(
                    state=result.state.value
                )
            return result

    async def _loop(
        self,
        run: TaskRun,
        spec: TaskSpec,
        state: _LoopState,
        channel: LoopChannel | None,
    ) -> None:
        schemas = self._executor.registry.schemas_for(run.capability_scope)
        observations: list[Observation] = []

        for turn in range(1, spec.turn_limit + 1):
            if self._cancelled(spec):
                self._finish(run, RunState.FAILED, reason=self._cancel_reason(spec))
                return

            run.turns = turn
            auth = await self._governor.authorize(run.run_id, self._turn_estimate)
            if not auth.allowed:
                self._deny(run, auth, state.partial)
                return

            request = ReasoningRequest(
                run_id=run.run_id,
                turn=turn,
                capabilities=schemas,
                conversation_handle=state.handle,
                system_instructions=spec.system_instructions if turn == 1 else None,
                instructions=spec.instructions if turn == 1 else None,
                observations=observations,
                metadata={"depth": run.depth, "parent_run_id": run.parent_run_id},
            )
            await self._emit(channel, LoopEventKind.TURN_STARTED, run, turn=turn)

            try:
                response = await self._provider.submit(request)
            except ProviderUnavailableError as e:
                await self._governor.commit(run.run_id, 0.0, auth.reserved)
                logger.warning("Reasoning provider unavailable", error_code=e.code, turn=turn)
                state.retryable = True
                self._finish(run, RunState.FAILED, reason="provider_unavailable")
                return
            except ProviderResponseError as e:
                await self._governor.commit(run.run_id, 0.0, auth.reserved)
                logger.error("Reasoning provider returned a bad response", error=e, turn=turn)
                self._finish(run, RunState.FAILED, reason="provider_error")
                return

            committed = await self._governor.commit(run.run_id, response.cost, auth.reserved)
            state.handle = response.conversation_handle or state.handle
            await self._emit(
                channel,
                LoopEventKind.PROVIDER_RESPONDED,
                run,
                turn=turn,
                response_kind=response.kind.value,
                cost=committed.recorded,
            )

            if self._cancelled(spec):
                self._finish(run, RunState.FAILED, reason=self._cancel_reason(spec))
                return

            if response.is_final:
                self._finish(run, RunState.SUCCEEDED, result=response.payload)
                return

            if not response.requests:
                logger.error("Provider requested no capabilities and gave no answer", turn=turn)
                self._finish(run, RunState.FAILED, reason="provider_error")
                return

            if self._parallel(spec):
                observations = await self._dispatch_parallel(run, spec, state, response.requests, channel)
            else:
                observations = await self._dispatch_sequential(run, spec, state, response.requests, channel)

            if run.state.is_terminal:
                return

        self._finish(run, RunState.TURN_EXCEEDED, result=state.partial, reason="turn_exceeded")

    # =========================================================================
    # Capability dispatch
    # =========================================================================

    async def _dispatch_sequential(
        self,
        run: TaskRun,
        spec: TaskSpec,
        state: _LoopState,
        requests: list[CapabilityRequest],
        channel: LoopChannel | None,
    ) -> list[Observation]:
        observations: list[Observation] = []

        for request in requests:
            if self._cancelled(spec):
                self._finish(run, RunState.FAILED, reason=self._cancel_reason(spec))
                break

            prepared = await self._prepare(run, spec, state, request, channel)
            if isinstance(prepared, Observation):
                observations.append(prepared)
                continue
            if prepared is None:
                break

            definition, auth = prepared
            await self._announce(run, spec, request, channel)
            outcome = await self._executor.execute(
                definition,
                request.arguments,
                context=self._context(run, spec, definition, request),
                call_id=request.call_id,
            )
            committed = await self._governor.commit(run.run_id, outcome.cost, auth.reserved)
            observations.append(await self._observe(run, spec, state, request, outcome, committed, channel))

            if run.state.is_terminal:
                break

        return observations

    async def _dispatch_parallel(
        self,
        run: TaskRun,
        spec: TaskSpec,
        state: _LoopState,
        requests: list[CapabilityRequest],
        channel: LoopChannel | None,
    ) -> list[Observation]:
        observations: list[Observation] = []
        batch: list[tuple[CapabilityRequest, CapabilityDefinition, Authorization]] = []

        for request in requests:
            if self._cancelled(spec):
                self._finish(run, RunState.FAILED, reason=self._cancel_reason(spec))
                break
            prepared = await self._prepare(run, spec, state, request, channel)
            if isinstance(prepared, Observation):
                observations.append(prepared)
                continue
            if prepared is None:
                break
            batch.append((request, *prepared))

        if run.state.is_terminal:
            for _, _, auth in batch:
                await self._governor.commit(run.run_id, 0.0, auth.reserved)
            return observations

        for request, _, _ in batch:
            await self._announce(run, spec, request, channel)

        outcomes = await asyncio.gather(
            *(
                self._executor.execute(
                    definition,
                    request.arguments,
                    context=self._context(run, spec, definition, request),
                    call_id=request.call_id,
                )
                for request, definition, _ in batch
            )
        )

        for (request, _, auth), outcome in zip(batch, outcomes, strict=True):
            committed = await self._governor.commit(run.run_id, outcome.cost, auth.reserved)
            observations.append(await self._observe(run, spec, state, request, outcome, committed, channel))

        return observations

    async def _prepare(
        self,
        run: TaskRun,
        spec: TaskSpec,
        state: _LoopState,
        request: CapabilityRequest,
        channel: LoopChannel | None,
    ) -> tuple[CapabilityDefinition, Authorization] | Observation | None:
        """
        Scope-check, resolve and authorize one request.

        Returns the definition and authorization to proceed, an Observation
        when the call is refused but the run continues, or None when the
        refusal ended the run.
        """
        try:
            check_scope(run.capability_scope, request.name)
            definition = self._executor.resolve(request.name)
        except ScopeViolation:
            return await self._reject(run, spec, request, "scope_violation", channel)
        except CapabilityNotFoundError:
            return await self._reject(run, spec, request, "unknown_capability", channel)

        auth = await self._governor.authorize(
            run.run_id,
            definition.estimate,
            credit_operation=definition.credit_operation,
            credit_quantity=definition.credit_quantity(request.arguments),
            capability=definition.name,
        )
        if auth.allowed:
            return definition, auth

        if auth.kind == DenialKind.CREDITS:
            return await self._reject(run, spec, request, auth.reason or "insufficient_credits", channel)

        self._deny(run, auth, state.partial)
        return None

    async def _reject(
        self,
        run: TaskRun,
        spec: TaskSpec,
        request: CapabilityRequest,
        reason: str,
        channel: LoopChannel | None,
    ) -> Observation:
        logger.warning("Capability call refused", capability=request.name, reason=reason)
        message = reason_message(reason)
        await self._hooks.fire(
            self._event(
                HookKind.CALL_FAILED,
                run,
                spec,
                capability=request.name,
                call_id=request.call_id,
                arguments=request.arguments,
                error=message,
                reason=reason,
            )
        )
        await self._emit(
            channel,
            LoopEventKind.CALL_FAILED,
            run,
            capability=request.name,
            call_id=request.call_id,
            reason=reason,
        )
        return Observation(call_id=request.call_id, name=request.name, error=message)

    async def _announce(
        self,
        run: TaskRun,
        spec: TaskSpec,
        request: CapabilityRequest,
        channel: LoopChannel | None,
    ) -> None:
        await self._hooks.fire(
            self._event(
                HookKind.PRE_CALL,
                run,
                spec,
                capability=request.name,
                call_id=request.call_id,
                arguments=request.arguments,
            )
        )
        await self._emit(
            channel,
            LoopEventKind.CALL_STARTED,
            run,
            capability=request.name,
            call_id=request.call_id,
        )

    async def _observe(
        self,
        run: TaskRun,
        spec: TaskSpec,
        state: _LoopState,
        request: CapabilityRequest,
        outcome: CapabilityOutcome,
        committed: CommitResult,
        channel: LoopChannel | None,
    ) -> Observation:
        if outcome.ok:
            if outcome.result is not None:
                state.partial = outcome.result
            await self._hooks.fire(
                self._event(
                    HookKind.POST_CALL,
                    run,
                    spec,
                    capability=request.name,
                    call_id=request.call_id,
                    arguments=request.arguments,
                    result=outcome.result,
                    cost=outcome.cost,
                )
            )
            await self._emit(
                channel,
                LoopEventKind.CALL_COMPLETED,
                run,
                capability=request.name,
                call_id=request.call_id,
                cost=committed.recorded,
                duration_ms=outcome.duration_ms,
            )
            return Observation(call_id=request.call_id, name=request.name, result=outcome.result)

        await self._hooks.fire(
            self._event(
                HookKind.CALL_FAILED,
                run,
                spec,
                capability=request.name,
                call_id=request.call_id,
                arguments=request.arguments,
                error=outcome.error,
                retryable=outcome.retryable,
                reason="capability_failed",
                cost=outcome.cost,
            )
        )
        await self._emit(
            channel,
            LoopEventKind.CALL_FAILED,
            run,
            capability=request.name,
            call_id=request.call_id,
            reason="capability_failed",
            retryable=outcome.retryable,
        )

        if not outcome.retryable:
            logger.warning("Fatal capability failure", capability=request.name)
            self._finish(run, RunState.FAILED, reason="capability_failed")

        return Observation(
            call_id=request.call_id,
            name=request.name,
            error=outcome.error,
            retryable=outcome.retryable,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _parallel(self, spec: TaskSpec) -> bool:
        return self._parallel_calls if spec.parallel_calls is None else spec.parallel_calls

    @staticmethod
    def _cancelled(spec: TaskSpec) -> bool:
        return spec.cancellation is not None and spec.cancellation.cancelled

    @staticmethod
    def _cancel_reason(spec: TaskSpec) -> str:
        token = spec.cancellation
        if token is not None and token.cancelled and token.reason:
            return token.reason
        return "cancelled"

    @staticmethod
    def _finish(
        run: TaskRun,
        state: RunState,
        *,
        result: Any = None,
        reason: str | None = None,
    ) -> None:
        if run.state.is_terminal:
            return
        run.state = state
        run.result = result
        run.reason = reason
        run.ended_at = utc_now()

    def _deny(self, run: TaskRun, auth: Authorization, partial: Any = None) -> None:
        state = RunState.TIMED_OUT if auth.kind == DenialKind.TIME else RunState.BUDGET_EXCEEDED
        self._finish(run, state, result=partial, reason=auth.reason)

    def _context(
        self,
        run: TaskRun,
        spec: TaskSpec,
        definition: CapabilityDefinition,
        request: CapabilityRequest,
    ) -> CapabilityContext:
        return CapabilityContext(
            run=run,
            spec=spec,
            definition=definition,
            call_id=request.call_id,
            spawner=self._spawner,
            metadata=dict(spec.metadata),
        )

    @staticmethod
    def _event(kind: HookKind, run: TaskRun, spec: TaskSpec, **fields: Any) -> HookEvent:
        return HookEvent(
            kind=kind,
            run_id=run.run_id,
            root_run_id=run.root_run_id,
            parent_run_id=run.parent_run_id,
            session_key=run.session_key,
            depth=run.depth,
            metadata=dict(spec.metadata),
            **fields,
        )

    @staticmethod
    async def _emit(
        channel: LoopChannel | None,
        kind: LoopEventKind,
        run: TaskRun,
        **data: Any,
    ) -> None:
        if channel is not None:
            await channel.send(LoopEvent(kind=kind, run_id=run.run_id, data=data))
