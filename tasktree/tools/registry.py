"""
Capability Registry

Schema-driven registration and discovery of capabilities.
Capabilities are the only way a run acts on the outside world.

Design decisions:
- Decorator-based registration for convenience
- JSON Schema derived from the function signature, validated before execution
- Cost class (or explicit estimate) declared up front for budget reservation
- Delegatable capabilities carry the policy for the child task they spawn
- Registry is frozen after start-up; registration afterwards raises
"""

import inspect
import types
import typing
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, get_type_hints

from tasktree.budget.pricing import estimate_for
from tasktree.core.exceptions import RegistryFrozenError
from tasktree.core.types import CostClass


# Parameters injected by the executor, never exposed in the schema.
_INJECTED_PARAMS = ("self", "cls", "context")


@dataclass
class ChildPolicy:
    """Limits for the child task a delegatable capability spawns."""

    instructions: str
    max_scope: frozenset[str]
    system_instructions: str | None = None
    turn_limit: int | None = None
    budget: float | None = None


@dataclass
class CapabilityDefinition:
    """
    Complete definition of a capability.

    Contains everything needed for:
    - The provider to understand and request it
    - The executor to validate and run it
    - The governor to reserve budget before it runs
    """

    name: str
    description: str
    function: Callable[..., Awaitable[Any] | Any]
    parameters: dict[str, Any]

    cost_class: CostClass = CostClass.LOOKUP
    estimated_cost: float | None = None

    is_async: bool = True
    timeout_seconds: float = 30.0
    accepts_context: bool = False

    # Credits
    credit_operation: str | None = None
    credit_quantity_arg: str | None = None

    # Delegation
    delegatable: bool = False
    child_policy: ChildPolicy | None = None

    tags: list[str] = field(default_factory=list)

    @property
    def requires_credits(self) -> bool:
        return self.credit_operation is not None

    @property
    def estimate(self) -> float:
        """Amount to reserve before this capability runs."""
        if self.delegatable and self.child_policy is not None and self.estimated_cost is None:
            return 0.0
        return estimate_for(self.cost_class, self.estimated_cost)

    def credit_quantity(self, arguments: dict[str, Any]) -> int:
        if self.credit_quantity_arg is None:
            return 1
        value = arguments.get(self.credit_quantity_arg, 1)
        return value if isinstance(value, int) and value > 0 else 1

    def to_schema(self) -> dict[str, Any]:
        """Provider-facing description of the capability."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


def _extract_schema_from_function(func: Callable) -> dict[str, Any]:
    """Build a JSON Schema from the function signature and type hints."""
    sig = inspect.signature(func)
    hints = get_type_hints(func) if hasattr(func, "__annotations__") else {}

    properties = {}
    required = []

    for param_name, param in sig.parameters.items():
        if param_name in _INJECTED_PARAMS:
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue

        properties[param_name] = _type_to_schema(hints.get(param_name, str))

        if param.default is inspect.Parameter.empty:
            required.append(param_name)

    return {
        "type": "object",
        "properties": properties,
        "required": required,
    }


def _type_to_schema(python_type: Any) -> dict[str, Any]:
    """Convert a Python type to JSON Schema."""
    origin = typing.get_origin(python_type)
    args = typing.get_args(python_type)

    if origin in (typing.Union, types.UnionType):
        non_none = [a for a in args if a is not type(None)]
        if non_none:
            return _type_to_schema(non_none[0])

    if origin is typing.Literal:
        return {"type": "string", "enum": list(args)}

    if origin is list:
        item_type = args[0] if args else str
        return {"type": "array", "items": _type_to_schema(item_type)}

    if origin is dict:
        return {"type": "object"}

    type_map = {
        str: {"type": "string"},
        int: {"type": "integer"},
        float: {"type": "number"},
        bool: {"type": "boolean"},
        list: {"type": "array"},
        dict: {"type": "object"},
    }

    return dict(type_map.get(python_type, {"type": "string"}))


def _accepts_context(func: Callable) -> bool:
    return "context" in inspect.signature(func).parameters


def capability(
    name: str | None = None,
    description: str | None = None,
    cost_class: CostClass = CostClass.LOOKUP,
    estimated_cost: float | None = None,
    timeout: float = 30.0,
    credit_operation: str | None = None,
    credit_quantity_arg: str | None = None,
    parameters: dict[str, Any] | None = None,
    tags: list[str] | None = None,
) -> Callable:
    """
    Decorator to declare a function as a capability.

    Usage:
        @capability(name="saveBrandData", cost_class=CostClass.LOOKUP)
        async def save_brand_data(brand_id: str, data: dict) -> dict:
            ...
    """

    def decorator(func: Callable) -> Callable:
        definition = CapabilityDefinition(
            name=name or func.__name__,
            description=description or (func.__doc__ or f"Execute {name or func.__name__}").strip(),
            function=func,
            parameters=parameters or _extract_schema_from_function(func),
            cost_class=cost_class,
            estimated_cost=estimated_cost,
            is_async=inspect.iscoroutinefunction(func),
            timeout_seconds=timeout,
            accepts_context=_accepts_context(func),
            credit_operation=credit_operation,
            credit_quantity_arg=credit_quantity_arg,
            tags=tags or [],
        )

        @wraps(func)
        async def wrapper(*args, **kwargs):
            if inspect.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return func(*args, **kwargs)

        wrapper._capability_definition = definition  # type: ignore[attr-defined]
        return wrapper

    return decorator


def delegating_capability(
    name: str,
    description: str,
    policy: ChildPolicy,
    timeout: float = 300.0,
    parameters: dict[str, Any] | None = None,
) -> CapabilityDefinition:
    """
    Build a delegatable capability that runs a child task.

    The provider passes free-form `task` text; the child receives the
    policy's instructions followed by that text.
    """

    async def _delegate(task: str, context: Any) -> Any:
        instructions = f"{policy.instructions}\n\n<task>\n{task}\n</task>"
        outcome = await context.spawn(
            instructions=instructions,
            capabilities=policy.max_scope,
            system_instructions=policy.system_instructions,
            turn_limit=policy.turn_limit,
            budget=policy.budget,
        )
        return outcome.to_dict()

    return CapabilityDefinition(
        name=name,
        description=description,
        function=_delegate,
        parameters=parameters
        or {
            "type": "object",
            "properties": {"task": {"type": "string"}},
            "required": ["task"],
        },
        cost_class=CostClass.DELEGATION,
        is_async=True,
        timeout_seconds=timeout,
        accepts_context=True,
        delegatable=True,
        child_policy=policy,
        tags=["delegation"],
    )


class CapabilityRegistry:
    """
    Central registry for all capabilities.

    Provides:
    - Registration and lookup by name
    - Scope-filtered schemas for the provider
    - Freezing after start-up
    """

    def __init__(self):
        self._capabilities: dict[str, CapabilityDefinition] = {}
        self._frozen = False

    def _check_open(self, name: str) -> None:
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register capability after start-up: {name}",
                context={"capability": name},
            )

    def register(self, definition: CapabilityDefinition) -> CapabilityDefinition:
        """Register a capability definition."""
        self._check_open(definition.name)
        if definition.name in self._capabilities:
            raise ValueError(f"Capability already registered: {definition.name}")
        self._capabilities[definition.name] = definition
        return definition

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
        **kwargs: Any,
    ) -> CapabilityDefinition:
        """Register a plain function as a capability (alternative to the decorator)."""
        cap_name = name or func.__name__
        definition = CapabilityDefinition(
            name=cap_name,
            description=description or (func.__doc__ or f"Execute {cap_name}").strip(),
            function=func,
            parameters=kwargs.pop("parameters", None) or _extract_schema_from_function(func),
            is_async=inspect.iscoroutinefunction(func),
            accepts_context=_accepts_context(func),
            **kwargs,
        )
        return self.register(definition)

    def register_decorated(self, func: Callable) -> CapabilityDefinition:
        """Register a function decorated with @capability."""
        definition = getattr(func, "_capability_definition", None)
        if definition is None:
            raise ValueError(f"Function {func.__name__} is not decorated with @capability")
        return self.register(definition)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> CapabilityDefinition | None:
        return self._capabilities.get(name)

    def names(self) -> frozenset[str]:
        return frozenset(self._capabilities)

    def list_capabilities(self, scope: frozenset[str] | None = None) -> list[CapabilityDefinition]:
        caps = list(self._capabilities.values())
        if scope is not None:
            caps = [c for c in caps if c.name in scope]
        return caps

    def schemas_for(self, scope: frozenset[str]) -> list[dict[str, Any]]:
        """Schemas of the registered capabilities inside `scope`, in registration order."""
        return [c.to_schema() for c in self.list_capabilities(scope)]

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)
