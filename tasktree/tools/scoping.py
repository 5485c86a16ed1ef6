"""
Capability Scoping

Scope arithmetic for runs and their children. A child's scope is always
the intersection of what was requested, what the delegating capability's
policy allows and what the parent holds, minus the delegating capability.
"""

from collections.abc import Iterable

from tasktree.core.exceptions import ScopeViolation


def derive_child_scope(
    requested: Iterable[str] | None,
    parent_scope: frozenset[str],
    delegating_capability: str,
    policy_max: frozenset[str] | None = None,
) -> frozenset[str]:
    """Compute the capability scope for a child task."""
    scope = frozenset(parent_scope) if requested is None else frozenset(requested) & parent_scope
    if policy_max is not None:
        scope &= policy_max
    return scope - {delegating_capability}


def check_scope(scope: frozenset[str], capability: str) -> None:
    """Raise ScopeViolation if `capability` is outside `scope`."""
    if capability not in scope:
        raise ScopeViolation(
            f"Capability not in scope: {capability}",
            capability=capability,
            context={"capability": capability},
        )
