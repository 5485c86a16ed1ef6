"""
Task Spawner

Creates child runs on behalf of delegatable capabilities.

Design decisions:
- Only reachable through CapabilityContext.spawn()
- Child scope = requested ∩ policy maximum ∩ parent scope, minus the
  delegating capability
- The child runs the same engine loop and the parent awaits it
- Child budget and turn limit come from the call, then the capability's
  policy, then the configured defaults
- Exceeding the depth limit is a failed terminal result, not an exception
"""

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from tasktree.core.exceptions import DelegationError
from tasktree.core.types import RunState, TerminalResult, new_id
from tasktree.observability.logging import get_logger
from tasktree.runtime.spec import TaskSpecBuilder
from tasktree.tools.scoping import derive_child_scope

if TYPE_CHECKING:
    from tasktree.runtime.context import CapabilityContext
    from tasktree.runtime.engine import ReasoningEngine

logger = get_logger("tasktree.runtime.spawner")


class TaskSpawner:
    """Spawns and awaits child runs."""

    def __init__(
        self,
        engine: "ReasoningEngine",
        *,
        max_depth: int = 2,
        default_turn_limit: int = 15,
        default_budget: float = 0.5,
    ):
        self._engine = engine
        self._max_depth = max_depth
        self._default_turn_limit = default_turn_limit
        self._default_budget = default_budget

    @property
    def max_depth(self) -> int:
        return self._max_depth

    async def spawn(
        self,
        context: "CapabilityContext",
        *,
        instructions: str,
        capabilities: Iterable[str] | None = None,
        system_instructions: str | None = None,
        turn_limit: int | None = None,
        budget: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TerminalResult:
        parent = context.run
        definition = context.definition
        policy = definition.child_policy
        depth = parent.depth + 1

        if depth > self._max_depth:
            logger.warning(
                "Delegation depth exceeded",
                run_id=parent.run_id,
                capability=definition.name,
                depth=depth,
                max_depth=self._max_depth,
            )
            return TerminalResult(
                run_id=new_id("run"),
                state=RunState.FAILED,
                reason="delegation_depth",
                parent_run_id=parent.run_id,
            )

        scope = derive_child_scope(
            capabilities,
            parent.capability_scope,
            definition.name,
            policy.max_scope if policy else None,
        )

        limit = _first_set(
            turn_limit, policy.turn_limit if policy else None, default=self._default_turn_limit
        )
        ceiling = _first_set(budget, policy.budget if policy else None, default=self._default_budget)
        if limit < 1:
            raise DelegationError(
                f"Child turn limit must be at least 1, got {limit}",
                context={"capability": definition.name, "turn_limit": limit},
            )

        child_metadata = {**context.spec.metadata, **(metadata or {}), "delegated_by": definition.name}

        spec = (
            TaskSpecBuilder(instructions)
            .with_scope(scope)
            .with_system_instructions(system_instructions)
            .with_turn_limit(limit)
            .with_budget(ceiling)
            .as_child_of(parent.run_id, depth)
            .for_session(parent.session_key)
            .with_cancellation(context.spec.cancellation)
            .with_parallel_calls(context.spec.parallel_calls)
            .with_metadata(**child_metadata)
            .build()
        )

        logger.info(
            "Spawning child task",
            run_id=parent.run_id,
            child_run_id=spec.run_id,
            capability=definition.name,
            scope=sorted(scope),
            turn_limit=limit,
            budget=ceiling,
        )

        return await self._engine.run(spec)


def _first_set(*values: Any, default: Any) -> Any:
    return next((v for v in values if v is not None), default)
