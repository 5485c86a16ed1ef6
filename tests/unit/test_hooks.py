"""
Unit Tests - Hook Bus and Built-in Observers
"""

import pytest

from tasktree.budget.governor import BudgetGovernor
from tasktree.core.types import RunState, reason_message
from tasktree.observability.audit import AuditEventType, InMemoryAuditStore
from tasktree.observability.events import InMemoryEventChannel, ProgressEventKind
from tasktree.reasoning.scripted import ScriptedReasoningProvider, ScriptedTurn
from tasktree.runtime.hooks import HookBus, HookEvent, HookKind
from tasktree.runtime.observers import AuditTrailObserver, CostCircuitBreaker, ProgressObserver
from tasktree.runtime.spec import TaskSpecBuilder


def _call(name: str, **arguments) -> dict:
    return {"name": name, "arguments": arguments}


class TestHookBus:
    """Tests for HookBus."""

    @pytest.mark.asyncio
    async def test_observers_run_in_subscription_order(self):
        """Sync and async observers are called in the order they subscribed."""
        bus = HookBus()
        calls = []

        async def first(event):
            calls.append("first")

        bus.subscribe(HookKind.POST_CALL, first)
        bus.subscribe(HookKind.POST_CALL, lambda event: calls.append("second"))

        await bus.fire(HookEvent(kind=HookKind.POST_CALL, run_id="run-1"))
        assert calls == ["first", "second"]

    @pytest.mark.asyncio
    async def test_failing_observer_is_isolated(self):
        """An observer that raises does not stop the others."""
        bus = HookBus()
        calls = []

        def explode(event):
            raise RuntimeError("observer bug")

        bus.subscribe(HookKind.RUN_ENDED, explode)
        bus.subscribe(HookKind.RUN_ENDED, lambda event: calls.append(event.run_id))

        await bus.fire(HookEvent(kind=HookKind.RUN_ENDED, run_id="run-1"))
        assert calls == ["run-1"]
        assert bus.errors == 1

    @pytest.mark.asyncio
    async def test_failing_observer_never_fails_the_run(self, make_engine, hooks):
        """A broken observer leaves the run's outcome untouched."""

        def explode(event):
            raise RuntimeError("observer bug")

        hooks.subscribe_all(explode)
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("lookup", query="x")]), ScriptedTurn(final="ok")]
        )
        result = await make_engine(provider).run(
            TaskSpecBuilder("Go").with_scope({"lookup"}).build()
        )

        assert result.state == RunState.SUCCEEDED
        assert hooks.errors == 4

    def test_unsubscribe(self):
        """unsubscribe() removes an observer once."""
        bus = HookBus()
        observer = lambda event: None  # noqa: E731
        bus.subscribe(HookKind.PRE_CALL, observer)

        assert bus.unsubscribe(HookKind.PRE_CALL, observer)
        assert not bus.unsubscribe(HookKind.PRE_CALL, observer)
        assert bus.observers(HookKind.PRE_CALL) == []


class TestProgressObserver:
    """Tests for hook → progress event mapping."""

    @pytest.mark.asyncio
    async def test_session_events_for_top_level_runs(self, make_engine, hooks):
        """A successful run publishes started, tool events and complete, in order."""
        channel = InMemoryEventChannel()
        reported = []

        async def on_progress(job_id, percent):
            reported.append((job_id, percent))

        ProgressObserver(channel, on_progress=on_progress).attach(hooks)
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(calls=[_call("save_brand_data", brand_id="b1", data={"apiKey": "x"})]),
                ScriptedTurn(final={"brand": "b1", "api_key": "secret"}),
            ]
        )
        spec = (
            TaskSpecBuilder("Go")
            .with_scope({"save_brand_data"})
            .for_session("brand-1")
            .with_metadata(job_id="job-1")
            .build()
        )
        await make_engine(provider).run(spec)

        events = channel.history("brand-1")
        assert [e.kind for e in events] == [
            ProgressEventKind.SESSION_STARTED,
            ProgressEventKind.TOOL_START,
            ProgressEventKind.TOOL_COMPLETE,
            ProgressEventKind.SESSION_COMPLETE,
        ]
        assert [e.sequence for e in events] == [1, 2, 3, 4]
        assert events[2].progress_percent == 55
        assert events[-1].result == {"brand": "b1"}
        assert all(e.job_id == "job-1" for e in events)
        assert reported == [("job-1", 55), ("job-1", 100)]

    @pytest.mark.asyncio
    async def test_child_runs_emit_tool_events_only(self, make_engine, hooks):
        """Children never publish session_started or session_complete."""
        channel = InMemoryEventChannel()
        ProgressObserver(channel).attach(hooks)
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("research", task="x")]), ScriptedTurn(final="ok")],
            scripts={
                r"research specialist": [
                    ScriptedTurn(calls=[_call("lookup", query="x")]),
                    ScriptedTurn(final="child"),
                ]
            },
        )
        spec = TaskSpecBuilder("Go").with_scope({"research", "lookup"}).for_session("brand-2").build()
        await make_engine(provider).run(spec)

        kinds = [e.kind for e in channel.history("brand-2")]
        assert kinds.count(ProgressEventKind.SESSION_STARTED) == 1
        assert kinds.count(ProgressEventKind.SESSION_COMPLETE) == 1
        assert kinds.count(ProgressEventKind.TOOL_COMPLETE) == 2
        assert all(e.run_id == spec.run_id for e in channel.history("brand-2"))

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self):
        """A later capability mapped lower does not lower the percentage."""
        channel = InMemoryEventChannel()
        observer = ProgressObserver(channel, progress_map={"logo_creator": 75, "validate_input": 5})

        for capability in ("logo_creator", "validate_input"):
            await observer.on_post_call(
                HookEvent(
                    kind=HookKind.POST_CALL,
                    run_id="run-1",
                    root_run_id="run-1",
                    session_key="brand-3",
                    capability=capability,
                )
            )

        percents = [e.progress_percent for e in channel.history("brand-3")]
        assert percents == [75, 75]

    @pytest.mark.asyncio
    async def test_failure_message_uses_reason_vocabulary(self):
        """session_failed carries the fixed message for the reason code."""
        channel = InMemoryEventChannel()
        observer = ProgressObserver(channel)

        await observer.on_run_ended(
            HookEvent(
                kind=HookKind.RUN_ENDED,
                run_id="run-1",
                root_run_id="run-1",
                session_key="brand-4",
                state=RunState.BUDGET_EXCEEDED,
                reason="budget_exceeded",
            )
        )

        event = channel.history("brand-4")[0]
        assert event.kind == ProgressEventKind.SESSION_FAILED
        assert event.message == reason_message("budget_exceeded")


class TestAuditTrailObserver:
    """Tests for the audit observer."""

    @pytest.mark.asyncio
    async def test_run_is_audited(self, make_engine, hooks):
        """Every lifecycle event lands in the audit store."""
        audit = InMemoryAuditStore()
        AuditTrailObserver(audit).attach(hooks)
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(calls=[_call("render_image", prompt="x")]),
                ScriptedTurn(final="ok"),
            ]
        )
        spec = TaskSpecBuilder("Go").with_scope({"lookup"}).build()
        await make_engine(provider).run(spec)

        types = [e.event_type for e in await audit.query(run_id=spec.run_id)]
        assert types == [
            AuditEventType.RUN_STARTED,
            AuditEventType.CAPABILITY_BLOCKED,
            AuditEventType.RUN_ENDED,
        ]


class TestCostCircuitBreaker:
    """Tests for the independent per-tree cost guard."""

    @pytest.mark.asyncio
    async def test_trips_and_force_denies_root(self):
        """Reported cost past the limit force-denies the tree."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("root", ceiling=10.0)
        audit = InMemoryAuditStore()
        breaker = CostCircuitBreaker(governor, limit=1.0, audit=audit)

        for _ in range(3):
            await breaker.on_cost(
                HookEvent(kind=HookKind.POST_CALL, run_id="root", root_run_id="root", cost=0.4)
            )

        assert breaker.total_for("root") == pytest.approx(1.2)
        assert (await governor.authorize("root", 0.0)).reason == "cost_guard"
        assert [e.event_type for e in audit.events] == [AuditEventType.BUDGET_FORCE_DENIED]

    @pytest.mark.asyncio
    async def test_totals_reset_when_tree_ends(self):
        """The per-tree total is dropped when the top-level run ends."""
        breaker = CostCircuitBreaker(BudgetGovernor(), limit=5.0)
        await breaker.on_cost(HookEvent(kind=HookKind.POST_CALL, run_id="root", cost=0.5))
        await breaker.on_run_ended(HookEvent(kind=HookKind.RUN_ENDED, run_id="root"))

        assert breaker.total_for("root") == 0.0
