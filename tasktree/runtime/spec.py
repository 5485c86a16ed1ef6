"""
Task Spec

Immutable run configuration plus a fluent builder for optional overrides.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from tasktree.core.types import CancellationToken, new_id


@dataclass(frozen=True)
class TaskSpec:
    """
    Everything the engine needs to execute one run.

    Frozen: derive variants with `with_changes()` or `TaskSpecBuilder`.
    """

    instructions: str
    capability_scope: frozenset[str]

    system_instructions: str | None = None
    turn_limit: int = 50
    budget: float = 2.0
    session_ceiling: float | None = None
    timeout_seconds: float | None = None

    resume_handle: str | None = None
    parent_run_id: str | None = None
    depth: int = 0
    session_key: str | None = None
    credit_account: str | None = None
    parallel_calls: bool | None = None

    run_id: str = field(default_factory=lambda: new_id("run"))
    cancellation: CancellationToken | None = field(default=None, compare=False)
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_top_level(self) -> bool:
        return self.parent_run_id is None

    def with_changes(self, **changes: Any) -> "TaskSpec":
        return replace(self, **changes)


class TaskSpecBuilder:
    """
    Builder pattern for TaskSpec.

        spec = (
            TaskSpecBuilder("Analyse the brand's social profiles")
            .with_scope(["social_lookup", "save_brand_data"])
            .with_turn_limit(20)
            .with_budget(1.0)
            .for_session("brand-123")
            .build()
        )
    """

    def __init__(self, instructions: str):
        self._instructions = instructions
        self._scope: frozenset[str] = frozenset()
        self._system_instructions: str | None = None
        self._turn_limit = 50
        self._budget = 2.0
        self._session_ceiling: float | None = None
        self._timeout_seconds: float | None = None
        self._resume_handle: str | None = None
        self._parent_run_id: str | None = None
        self._depth = 0
        self._session_key: str | None = None
        self._credit_account: str | None = None
        self._parallel_calls: bool | None = None
        self._run_id: str | None = None
        self._cancellation: CancellationToken | None = None
        self._metadata: dict[str, Any] = {}

    def with_scope(self, capabilities: Iterable[str]) -> "TaskSpecBuilder":
        """Set the capabilities this run may invoke."""
        self._scope = frozenset(capabilities)
        return self

    def with_system_instructions(self, text: str | None) -> "TaskSpecBuilder":
        self._system_instructions = text
        return self

    def with_turn_limit(self, turn_limit: int) -> "TaskSpecBuilder":
        self._turn_limit = turn_limit
        return self

    def with_budget(self, ceiling: float) -> "TaskSpecBuilder":
        """Set the run's spend ceiling in USD."""
        self._budget = ceiling
        return self

    def with_session_ceiling(self, ceiling: float | None) -> "TaskSpecBuilder":
        """Set the tree-wide ceiling (top-level runs only)."""
        self._session_ceiling = ceiling
        return self

    def with_timeout(self, seconds: float | None) -> "TaskSpecBuilder":
        self._timeout_seconds = seconds
        return self

    def resume_from(self, handle: str | None) -> "TaskSpecBuilder":
        """Continue the provider conversation behind `handle`."""
        self._resume_handle = handle
        return self

    def as_child_of(self, parent_run_id: str, depth: int) -> "TaskSpecBuilder":
        self._parent_run_id = parent_run_id
        self._depth = depth
        return self

    def for_session(self, session_key: str | None) -> "TaskSpecBuilder":
        self._session_key = session_key
        return self

    def with_credit_account(self, account: str | None) -> "TaskSpecBuilder":
        self._credit_account = account
        return self

    def with_parallel_calls(self, enabled: bool | None = True) -> "TaskSpecBuilder":
        self._parallel_calls = enabled
        return self

    def with_run_id(self, run_id: str) -> "TaskSpecBuilder":
        self._run_id = run_id
        return self

    def with_cancellation(self, token: CancellationToken | None) -> "TaskSpecBuilder":
        self._cancellation = token
        return self

    def with_metadata(self, **metadata: Any) -> "TaskSpecBuilder":
        self._metadata.update(metadata)
        return self

    def build(self) -> TaskSpec:
        """
        Build the TaskSpec.

        Raises:
            ValueError: If the turn limit or budget is invalid
        """
        if self._turn_limit < 1:
            raise ValueError("turn_limit must be at least 1")
        if self._budget < 0:
            raise ValueError("budget must not be negative")

        kwargs: dict[str, Any] = {}
        if self._run_id is not None:
            kwargs["run_id"] = self._run_id

        return TaskSpec(
            instructions=self._instructions,
            capability_scope=self._scope,
            system_instructions=self._system_instructions,
            turn_limit=self._turn_limit,
            budget=self._budget,
            session_ceiling=self._session_ceiling,
            timeout_seconds=self._timeout_seconds,
            resume_handle=self._resume_handle,
            parent_run_id=self._parent_run_id,
            depth=self._depth,
            session_key=self._session_key,
            credit_account=self._credit_account,
            parallel_calls=self._parallel_calls,
            cancellation=self._cancellation,
            metadata=dict(self._metadata),
            **kwargs,
        )
