"""
Test Configuration

Shared fixtures: a small capability registry, the budget governor, an
engine factory over scripted providers, and in-memory stores.
"""

import pytest

from tasktree.budget.governor import BudgetGovernor
from tasktree.core.exceptions import FatalCapabilityFailure, RetryableCapabilityFailure
from tasktree.core.types import CostClass
from tasktree.memory.session import InMemorySessionCache, InMemorySessionRepository, SessionStore
from tasktree.observability.events import InMemoryEventChannel
from tasktree.observability.metrics import MetricsCollector
from tasktree.runtime.engine import ReasoningEngine
from tasktree.runtime.hooks import HookBus
from tasktree.storage.database import create_db_engine, init_schema
from tasktree.tools.executor import CapabilityExecutor, CapabilityResult
from tasktree.tools.registry import (
    CapabilityRegistry,
    ChildPolicy,
    capability,
    delegating_capability,
)
from tasktree.worker.dispatcher import JobDispatcher
from tasktree.worker.jobs import InMemoryJobStore


@capability(name="lookup", description="Look up a fact", cost_class=CostClass.LOOKUP)
async def lookup(query: str) -> dict:
    return {"query": query, "answer": f"facts about {query}"}


@capability(name="save_brand_data", description="Persist brand data", cost_class=CostClass.FREE)
def save_brand_data(brand_id: str, data: dict) -> dict:
    return {"saved": brand_id, "fields": sorted(data)}


@capability(name="render_image", description="Render an image", cost_class=CostClass.IMAGE)
async def render_image(prompt: str) -> CapabilityResult:
    return CapabilityResult(result={"url": f"https://cdn.example/{len(prompt)}.png"}, cost=0.05)


@capability(name="flaky", description="Fails transiently")
async def flaky() -> dict:
    raise RetryableCapabilityFailure("upstream rate limit")


@capability(name="broken", description="Fails for good")
async def broken() -> dict:
    raise FatalCapabilityFailure("brand record is corrupt")


RESEARCH_POLICY = ChildPolicy(
    instructions="You are the research specialist.",
    max_scope=frozenset({"lookup"}),
    turn_limit=5,
    budget=0.5,
)

BASE_SCOPE = frozenset({"lookup", "save_brand_data", "render_image", "flaky", "broken", "research"})


@pytest.fixture
def registry() -> CapabilityRegistry:
    """Registry with plain, failing and delegating capabilities."""
    registry = CapabilityRegistry()
    for func in (lookup, save_brand_data, render_image, flaky, broken):
        registry.register_decorated(func)
    registry.register(
        delegating_capability("research", "Delegate a research task", RESEARCH_POLICY)
    )
    return registry


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(prefix="test")


@pytest.fixture
def governor(metrics) -> BudgetGovernor:
    return BudgetGovernor(default_timeout_seconds=None, metrics=metrics)


@pytest.fixture
def hooks() -> HookBus:
    return HookBus()


@pytest.fixture
def executor(registry, metrics) -> CapabilityExecutor:
    return CapabilityExecutor(registry, metrics=metrics)


@pytest.fixture
def make_engine(executor, governor, hooks, metrics):
    """Factory: engine over the shared executor, governor and hook bus."""

    def _make(provider, **kwargs) -> ReasoningEngine:
        return ReasoningEngine(provider, executor, governor, hooks=hooks, metrics=metrics, **kwargs)

    return _make


@pytest.fixture
def session_store() -> SessionStore:
    return SessionStore(InMemorySessionCache(), InMemorySessionRepository())


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def dispatcher(job_store, metrics) -> JobDispatcher:
    return JobDispatcher(job_store, queue_name="test", metrics=metrics)


@pytest.fixture
def channel() -> InMemoryEventChannel:
    return InMemoryEventChannel()


@pytest.fixture
def sql_engine():
    """In-memory SQLite engine with the schema created."""
    engine = create_db_engine("sqlite://")
    init_schema(engine)
    yield engine
    engine.dispose()
