"""
Runtime Module

The ReasoningEngine drives every task run, top-level or delegated.
All orchestration flows through here.
"""

from tasktree.runtime.context import CapabilityContext
from tasktree.runtime.engine import ReasoningEngine
from tasktree.runtime.factory import OrchestratorBuilder, OrchestratorContext, build_context
from tasktree.runtime.hooks import HookBus, HookEvent, HookKind
from tasktree.runtime.observers import (
    DEFAULT_PROGRESS_MAP,
    AuditTrailObserver,
    CostCircuitBreaker,
    ProgressObserver,
)
from tasktree.runtime.spawner import TaskSpawner
from tasktree.runtime.spec import TaskSpec, TaskSpecBuilder
from tasktree.runtime.stream import LoopChannel, LoopEvent, LoopEventKind
from tasktree.runtime.workflows import (
    StepProfile,
    WorkflowProfile,
    WorkflowRegistry,
    build_step_instructions,
)

__all__ = [
    # Engine
    "ReasoningEngine",
    "TaskSpawner",
    "CapabilityContext",
    "TaskSpec",
    "TaskSpecBuilder",
    # Streaming
    "LoopChannel",
    "LoopEvent",
    "LoopEventKind",
    # Hooks
    "HookBus",
    "HookEvent",
    "HookKind",
    "DEFAULT_PROGRESS_MAP",
    "AuditTrailObserver",
    "CostCircuitBreaker",
    "ProgressObserver",
    # Workflows
    "StepProfile",
    "WorkflowProfile",
    "WorkflowRegistry",
    "build_step_instructions",
    # Factory
    "OrchestratorBuilder",
    "OrchestratorContext",
    "build_context",
]
