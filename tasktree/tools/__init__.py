"""
Capability Module

Capability registry, validated execution and scope arithmetic.
"""

from tasktree.tools.executor import (
    CapabilityExecutor,
    CapabilityOutcome,
    CapabilityResult,
    CapabilityValidator,
    classify_error,
)
from tasktree.tools.registry import (
    CapabilityDefinition,
    CapabilityRegistry,
    ChildPolicy,
    capability,
    delegating_capability,
)
from tasktree.tools.scoping import check_scope, derive_child_scope

__all__ = [
    # Executor
    "CapabilityExecutor",
    "CapabilityOutcome",
    "CapabilityResult",
    "CapabilityValidator",
    "classify_error",
    # Registry
    "CapabilityDefinition",
    "CapabilityRegistry",
    "ChildPolicy",
    "capability",
    "delegating_capability",
    # Scoping
    "check_scope",
    "derive_child_scope",
]
