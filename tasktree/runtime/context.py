"""
Capability Context

The handle a capability function receives when it declares a `context`
parameter. Delegatable capabilities use it to spawn child tasks.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tasktree.core.exceptions import DelegationError
from tasktree.core.types import CancellationToken, TaskRun, TerminalResult
from tasktree.tools.registry import CapabilityDefinition

if TYPE_CHECKING:
    from tasktree.runtime.spawner import TaskSpawner
    from tasktree.runtime.spec import TaskSpec


@dataclass
class CapabilityContext:
    """Per-call view of the calling run."""

    run: TaskRun
    spec: "TaskSpec"
    definition: CapabilityDefinition
    call_id: str
    spawner: "TaskSpawner | None" = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def session_key(self) -> str | None:
        return self.run.session_key

    @property
    def cancellation(self) -> CancellationToken | None:
        return self.spec.cancellation

    @property
    def cancelled(self) -> bool:
        return self.cancellation is not None and self.cancellation.cancelled

    async def spawn(
        self,
        *,
        instructions: str,
        capabilities: Iterable[str] | None = None,
        system_instructions: str | None = None,
        turn_limit: int | None = None,
        budget: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TerminalResult:
        """
        Run a child task and wait for its terminal result.

        Raises:
            DelegationError: if the calling capability is not delegatable
        """
        if self.spawner is None or not self.definition.delegatable:
            raise DelegationError(
                f"Capability '{self.definition.name}' cannot spawn child tasks",
                context={"capability": self.definition.name},
            )
        return await self.spawner.spawn(
            self,
            instructions=instructions,
            capabilities=capabilities,
            system_instructions=system_instructions,
            turn_limit=turn_limit,
            budget=budget,
            metadata=metadata,
        )
