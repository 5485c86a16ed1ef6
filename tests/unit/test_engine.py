"""
Unit Tests - Reasoning-Loop Engine

Run lifecycle, capability dispatch, partial results, cancellation and
the budget/time denials that end a run.
"""

import asyncio

import pytest

from tasktree.budget.governor import BudgetGovernor
from tasktree.core.exceptions import ProviderResponseError, ProviderUnavailableError
from tasktree.core.types import CancellationToken, RunState, reason_message
from tasktree.reasoning.scripted import ScriptedReasoningProvider, ScriptedTurn
from tasktree.runtime.engine import ReasoningEngine
from tasktree.runtime.hooks import HookBus, HookKind
from tasktree.runtime.spec import TaskSpecBuilder
from tasktree.runtime.stream import LoopEventKind
from tasktree.runtime.workflows import StepProfile, WorkflowProfile

BASE_SCOPE = frozenset({"lookup", "save_brand_data", "render_image", "flaky", "broken", "research"})


def _call(name: str, **arguments) -> dict:
    return {"name": name, "arguments": arguments}


def _spec(instructions: str = "Analyse the brand", **overrides):
    builder = TaskSpecBuilder(instructions).with_scope(overrides.pop("scope", BASE_SCOPE))
    for method, value in overrides.items():
        getattr(builder, method)(value)
    return builder.build()


class TestRunLifecycle:
    """Tests for the think → act → observe loop."""

    @pytest.mark.asyncio
    async def test_final_answer_on_first_turn(self, make_engine):
        """A final answer ends the run successfully after one turn."""
        provider = ScriptedReasoningProvider([ScriptedTurn(final={"ok": True}, cost=0.01)])
        result = await make_engine(provider).run(_spec())

        assert result.state == RunState.SUCCEEDED
        assert result.result == {"ok": True}
        assert result.turns == 1
        assert result.spend == pytest.approx(0.01)
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_observations_feed_the_next_turn(self, make_engine):
        """Capability results come back as observations on the following turn."""
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(calls=[_call("lookup", query="matcha")]),
                ScriptedTurn(final={"summary": "done"}),
            ]
        )
        spec = _spec(with_system_instructions="Be terse.")
        result = await make_engine(provider).run(spec)

        assert result.succeeded
        assert result.turns == 2

        first, second = provider.requests_for(spec.run_id)
        assert first.instructions is not None
        assert first.system_instructions == "Be terse."
        assert second.instructions is None
        assert second.system_instructions is None
        assert second.conversation_handle is not None
        assert second.observations[0].result["query"] == "matcha"
        assert result.conversation_handle == second.conversation_handle

    @pytest.mark.asyncio
    async def test_only_scoped_capabilities_are_advertised(self, make_engine):
        """The provider sees schemas for the run's scope only."""
        provider = ScriptedReasoningProvider([ScriptedTurn(final="ok")])
        spec = _spec(scope=frozenset({"lookup", "save_brand_data"}))
        await make_engine(provider).run(spec)

        names = {schema["name"] for schema in provider.requests_for(spec.run_id)[0].capabilities}
        assert names == {"lookup", "save_brand_data"}

    @pytest.mark.asyncio
    async def test_hooks_bracket_every_run(self, make_engine, hooks: HookBus):
        """run_started comes first and run_ended last, with calls in between."""
        seen = []
        hooks.subscribe_all(lambda event: seen.append(event.kind))
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("lookup", query="x")]), ScriptedTurn(final="ok")]
        )
        await make_engine(provider).run(_spec())

        assert seen == [
            HookKind.RUN_STARTED,
            HookKind.PRE_CALL,
            HookKind.POST_CALL,
            HookKind.RUN_ENDED,
        ]

    @pytest.mark.asyncio
    async def test_stream_yields_loop_events(self, make_engine):
        """stream() ends with run_ended carrying the terminal result."""
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("lookup", query="x")]), ScriptedTurn(final="ok")]
        )
        events = [event async for event in make_engine(provider).stream(_spec())]

        kinds = [event.kind for event in events]
        assert kinds[0] == LoopEventKind.RUN_STARTED
        assert LoopEventKind.CALL_COMPLETED in kinds
        assert kinds[-1] == LoopEventKind.RUN_ENDED
        assert events[-1].data["result"].state == RunState.SUCCEEDED

        responded = [e.data for e in events if e.kind == LoopEventKind.PROVIDER_RESPONDED]
        assert [d["response_kind"] for d in responded] == ["capability_requests", "final_answer"]
        assert [d["turn"] for d in responded] == [1, 2]

    @pytest.mark.asyncio
    async def test_closing_stream_early_ends_the_run(self, make_engine, hooks: HookBus, governor):
        """Abandoning the stream fires run_ended and releases the run."""
        ended = []
        hooks.subscribe(HookKind.RUN_ENDED, lambda event: ended.append(event.reason))
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("lookup", query="x")], delay=0.5), ScriptedTurn(final="ok")]
        )
        spec = _spec()
        stream = make_engine(provider).stream(spec)

        first = await stream.__anext__()
        await stream.aclose()

        assert first.kind == LoopEventKind.RUN_STARTED
        assert ended == ["cancelled"]
        assert not governor.is_registered(spec.run_id)


class TestCapabilityDispatch:
    """Tests for scope checks and failure handling during calls."""

    @pytest.mark.asyncio
    async def test_out_of_scope_call_is_refused(self, make_engine, metrics):
        """A call outside the scope never executes; the run continues."""
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(calls=[_call("render_image", prompt="logo")]),
                ScriptedTurn(final="ok"),
            ]
        )
        spec = _spec(scope=frozenset({"lookup"}))
        result = await make_engine(provider).run(spec)

        assert result.succeeded
        observation = provider.requests_for(spec.run_id)[1].observations[0]
        assert observation.error == reason_message("scope_violation")
        assert metrics.counter("capability_calls_total").get(
            capability="render_image", status="success"
        ) == 0

    @pytest.mark.asyncio
    async def test_unknown_capability_is_refused(self, make_engine):
        """An unregistered name becomes an error observation."""
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("teleport")]), ScriptedTurn(final="ok")]
        )
        spec = _spec(scope=BASE_SCOPE | {"teleport"})
        result = await make_engine(provider).run(spec)

        assert result.succeeded
        observation = provider.requests_for(spec.run_id)[1].observations[0]
        assert observation.error == reason_message("unknown_capability")

    @pytest.mark.asyncio
    async def test_retryable_failure_is_observed(self, make_engine):
        """A retryable failure is reported to the provider and the run goes on."""
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("flaky")]), ScriptedTurn(final="recovered")]
        )
        spec = _spec()
        result = await make_engine(provider).run(spec)

        assert result.result == "recovered"
        observation = provider.requests_for(spec.run_id)[1].observations[0]
        assert observation.retryable is True
        assert "rate limit" in observation.error

    @pytest.mark.asyncio
    async def test_fatal_failure_ends_run(self, make_engine):
        """A fatal capability failure ends the run as failed."""
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(calls=[_call("broken"), _call("lookup", query="never")]),
                ScriptedTurn(final="unreachable"),
            ]
        )
        result = await make_engine(provider).run(_spec())

        assert result.state == RunState.FAILED
        assert result.reason == "capability_failed"
        assert result.retryable is False
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_invalid_arguments_are_retryable(self, make_engine):
        """Schema validation failures come back as retryable observations."""
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("lookup", query=42)]), ScriptedTurn(final="ok")]
        )
        spec = _spec()
        await make_engine(provider).run(spec)

        observation = provider.requests_for(spec.run_id)[1].observations[0]
        assert observation.error.startswith("Validation failed")
        assert observation.retryable is True

    @pytest.mark.asyncio
    async def test_parallel_calls_run_concurrently(self, make_engine, registry):
        """With parallel calls on, calls of one turn overlap."""
        arrived = 0
        both_here = asyncio.Event()

        async def rendezvous(label: str) -> dict:
            nonlocal arrived
            arrived += 1
            if arrived == 2:
                both_here.set()
            await asyncio.wait_for(both_here.wait(), timeout=1.0)
            return {"label": label}

        registry.register_function(rendezvous, name="rendezvous")
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(calls=[_call("rendezvous", label="a"), _call("rendezvous", label="b")]),
                ScriptedTurn(final="ok"),
            ]
        )
        spec = _spec(scope=frozenset({"rendezvous"}), with_parallel_calls=True)
        result = await make_engine(provider).run(spec)

        assert result.succeeded
        observations = provider.requests_for(spec.run_id)[1].observations
        assert [o.result for o in observations] == [{"label": "a"}, {"label": "b"}]


class TestTerminalStates:
    """Tests for non-success terminal states."""

    @pytest.mark.asyncio
    async def test_turn_limit_returns_last_partial_result(self, make_engine):
        """Hitting the turn limit keeps the last successful call result."""
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(calls=[_call("lookup", query="first")]),
                ScriptedTurn(calls=[_call("lookup", query="second")]),
                ScriptedTurn(final="too late"),
            ]
        )
        result = await make_engine(provider).run(_spec(with_turn_limit=2))

        assert result.state == RunState.TURN_EXCEEDED
        assert result.reason == "turn_exceeded"
        assert result.result["query"] == "second"
        assert result.turns == 2

    @pytest.mark.asyncio
    async def test_turn_limit_without_success_has_no_partial(self, make_engine):
        """No successful call means no partial result."""
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("flaky")]), ScriptedTurn(calls=[_call("flaky")])]
        )
        result = await make_engine(provider).run(_spec(with_turn_limit=2))

        assert result.state == RunState.TURN_EXCEEDED
        assert result.result is None

    @pytest.mark.asyncio
    async def test_budget_exhaustion_ends_run(self, make_engine):
        """A denied turn reservation ends the run within its ceiling, keeping the partial."""
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(calls=[_call("lookup", query="a")], cost=0.04),
                ScriptedTurn(final="unreachable", cost=0.04),
            ]
        )
        result = await make_engine(provider).run(_spec(with_budget=0.05))

        assert result.state == RunState.BUDGET_EXCEEDED
        assert result.reason == "budget_exceeded"
        assert result.spend <= 0.05
        assert result.result["query"] == "a"

    @pytest.mark.asyncio
    async def test_time_limit_ends_run(self, executor):
        """Passing the wall-clock limit ends the run as timed out."""
        now = [0.0]
        governor = BudgetGovernor(default_timeout_seconds=10.0, clock=lambda: now[0])
        hooks = HookBus()

        def advance(_event):
            now[0] += 11.0

        hooks.subscribe(HookKind.POST_CALL, advance)
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(calls=[_call("lookup", query="a")]), ScriptedTurn(final="late")]
        )
        engine = ReasoningEngine(provider, executor, governor, hooks=hooks)
        result = await engine.run(_spec())

        assert result.state == RunState.TIMED_OUT
        assert result.reason == "timed_out"
        assert result.result == {"query": "a", "answer": "facts about a"}

    @pytest.mark.asyncio
    async def test_cancelled_before_first_turn(self, make_engine):
        """A cancelled token stops the run before the provider is called."""
        token = CancellationToken()
        token.cancel()
        provider = ScriptedReasoningProvider([ScriptedTurn(final="ok")])
        result = await make_engine(provider).run(_spec(with_cancellation=token))

        assert result.state == RunState.FAILED
        assert result.reason == "cancelled"
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_cancelled_between_turns(self, make_engine, hooks: HookBus):
        """Cancellation during a run is honoured at the next checkpoint."""
        token = CancellationToken()
        hooks.subscribe(HookKind.POST_CALL, lambda _event: token.cancel())
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(calls=[_call("lookup", query="a")]),
                ScriptedTurn(final="unreachable"),
            ]
        )
        result = await make_engine(provider).run(_spec(with_cancellation=token))

        assert result.reason == "cancelled"
        assert result.turns == 1
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_cancel_inside_turn_skips_remaining_calls(self, make_engine, registry, metrics):
        """A cancellation raised by one call stops the rest of that turn's calls."""
        token = CancellationToken()

        def stop_campaign(campaign: str) -> dict:
            token.cancel()
            return {"stopped": campaign}

        registry.register_function(stop_campaign, name="stop_campaign", description="Stop a campaign")
        provider = ScriptedReasoningProvider(
            [
                ScriptedTurn(
                    calls=[
                        _call("stop_campaign", campaign="spring"),
                        _call("lookup", query="never"),
                    ]
                ),
                ScriptedTurn(final="unreachable"),
            ]
        )
        spec = _spec(scope=frozenset({"stop_campaign", "lookup"}), with_cancellation=token)
        result = await make_engine(provider).run(spec)

        assert result.state == RunState.FAILED
        assert result.reason == "cancelled"
        calls = metrics.counter("capability_calls_total")
        assert calls.total() == 1
        assert calls.get(capability="stop_campaign", status="success") == 1
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_answer_arriving_after_cancel_is_discarded(self, make_engine):
        """A final answer that lands after cancellation does not succeed the run."""
        token = CancellationToken()
        provider = ScriptedReasoningProvider([ScriptedTurn(final="late", delay=0.1)])
        run = asyncio.create_task(make_engine(provider).run(_spec(with_cancellation=token)))
        await asyncio.sleep(0.02)
        token.cancel("timeout")

        result = await run

        assert result.state == RunState.FAILED
        assert result.reason == "timeout"
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_provider_unavailable_is_retryable(self, make_engine):
        """An unreachable provider fails the run but marks it retryable."""
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(raises=ProviderUnavailableError("overloaded"))]
        )
        result = await make_engine(provider).run(_spec())

        assert result.state == RunState.FAILED
        assert result.reason == "provider_unavailable"
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_bad_provider_response_is_fatal(self, make_engine):
        """A malformed provider response fails the run without retry."""
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(raises=ProviderResponseError("no kind"))]
        )
        result = await make_engine(provider).run(_spec())

        assert result.reason == "provider_error"
        assert result.retryable is False


class TestResume:
    """Tests for resuming a conversation across workflow steps."""

    @pytest.mark.asyncio
    async def test_second_step_continues_stored_conversation(self, make_engine):
        """Step B is sent with step A's handle and only its own instructions."""
        profile = WorkflowProfile(
            name="brand_wizard",
            capabilities=["lookup"],
            steps=[
                StepProfile(name="step-a", instructions="Analyse the social profiles."),
                StepProfile(name="step-b", instructions="Generate the brand identity."),
            ],
        )
        provider = ScriptedReasoningProvider(
            [ScriptedTurn(final={"step": "a"})],
        )
        engine = make_engine(provider)

        first = await engine.run(profile.build_spec("step-a", {"handle": "@brand"}).build())
        handle = first.conversation_handle
        assert handle is not None

        second_spec = (
            profile.build_spec("step-b", {"palette": "warm"})
            .resume_from(handle)
            .for_session("brand-1")
            .build()
        )
        await engine.run(second_spec)

        request = provider.requests_for(second_spec.run_id)[0]
        assert request.conversation_handle == handle
        assert "Current workflow step: step-b" in request.instructions
        assert "Generate the brand identity." in request.instructions
        assert "Analyse the social profiles." not in request.instructions
