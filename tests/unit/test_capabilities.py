"""
Unit Tests - Capability Registry, Executor and Scoping
"""

import asyncio

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tasktree.core.exceptions import (
    CapabilityNotFoundError,
    FatalCapabilityFailure,
    RegistryFrozenError,
    RetryableCapabilityFailure,
    ScopeViolation,
)
from tasktree.core.types import CostClass
from tasktree.tools.executor import CapabilityExecutor, CapabilityResult, classify_error
from tasktree.tools.registry import CapabilityRegistry, ChildPolicy, capability, delegating_capability
from tasktree.tools.scoping import check_scope, derive_child_scope


class TestCapabilityRegistry:
    """Tests for CapabilityRegistry."""

    def test_decorator_derives_schema(self):
        """@capability builds a JSON Schema from the signature."""

        @capability(name="logo_creator", cost_class=CostClass.IMAGE, credit_operation="logo")
        async def logo_creator(brand_id: str, count: int = 4, styles: list[str] | None = None) -> dict:
            """Generate logo options."""
            return {}

        definition = logo_creator._capability_definition
        assert definition.description == "Generate logo options."
        assert definition.parameters["required"] == ["brand_id"]
        assert definition.parameters["properties"]["count"] == {"type": "integer"}
        assert definition.parameters["properties"]["styles"] == {
            "type": "array",
            "items": {"type": "string"},
        }
        assert definition.requires_credits

    def test_context_parameter_is_hidden(self):
        """An injected context parameter never appears in the schema."""
        registry = CapabilityRegistry()

        async def delegate(task: str, context) -> dict:
            return {}

        definition = registry.register_function(delegate)
        assert definition.accepts_context
        assert "context" not in definition.parameters["properties"]

    def test_duplicate_registration_rejected(self, registry):
        """Registering the same name twice raises ValueError."""
        with pytest.raises(ValueError):
            registry.register(registry.get("lookup"))

    def test_frozen_registry_rejects_registration(self, registry):
        """After freeze(), registration raises RegistryFrozenError."""
        registry.freeze()
        assert registry.frozen

        with pytest.raises(RegistryFrozenError):
            registry.register_function(lambda: None, name="late")

    def test_schemas_follow_scope(self, registry):
        """schemas_for() lists only capabilities inside the scope."""
        schemas = registry.schemas_for(frozenset({"lookup", "missing"}))
        assert [s["name"] for s in schemas] == ["lookup"]
        assert "input_schema" in schemas[0]

    def test_estimates(self, registry):
        """Cost class drives the reservation; delegation reserves nothing."""
        assert registry.get("render_image").estimate == pytest.approx(0.06)
        assert registry.get("save_brand_data").estimate == 0.0
        assert registry.get("research").estimate == 0.0

    def test_credit_quantity_argument(self):
        """credit_quantity() reads the configured argument, defaulting to 1."""

        @capability(name="mockups", credit_operation="mockup", credit_quantity_arg="count")
        async def mockups(count: int) -> dict:
            return {}

        definition = mockups._capability_definition
        assert definition.credit_quantity({"count": 3}) == 3
        assert definition.credit_quantity({"count": "three"}) == 1
        assert definition.credit_quantity({}) == 1

    def test_delegating_capability_has_policy(self):
        """delegating_capability() builds a delegatable definition."""
        policy = ChildPolicy(instructions="Analyse.", max_scope=frozenset({"lookup"}))
        definition = delegating_capability("social_analyzer", "Analyse socials", policy)

        assert definition.delegatable
        assert definition.child_policy is policy
        assert definition.parameters["required"] == ["task"]


class TestCapabilityExecutor:
    """Tests for CapabilityExecutor."""

    @pytest.mark.asyncio
    async def test_plain_return_is_charged_the_estimate(self, executor, registry):
        """A capability without an explicit cost is charged its estimate."""
        outcome = await executor.execute(registry.get("lookup"), {"query": "x"}, call_id="c1")

        assert outcome.ok
        assert outcome.call_id == "c1"
        assert outcome.cost == pytest.approx(0.001)

    @pytest.mark.asyncio
    async def test_capability_result_reports_actual_cost(self, executor, registry):
        """CapabilityResult overrides the estimate with the actual cost."""
        outcome = await executor.execute(registry.get("render_image"), {"prompt": "logo"})
        assert outcome.cost == pytest.approx(0.05)
        assert outcome.result["url"].endswith(".png")

    @pytest.mark.asyncio
    async def test_sync_capability_runs(self, executor, registry):
        """Sync capabilities run in a worker thread."""
        outcome = await executor.execute(
            registry.get("save_brand_data"), {"brand_id": "b1", "data": {"b": 1, "a": 2}}
        )
        assert outcome.result == {"saved": "b1", "fields": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        """A capability past its timeout yields a retryable outcome."""
        registry = CapabilityRegistry()

        async def slow() -> dict:
            await asyncio.sleep(1)
            return {}

        definition = registry.register_function(slow, timeout_seconds=0.01)
        outcome = await CapabilityExecutor(registry).execute(definition, {})

        assert not outcome.ok
        assert outcome.retryable
        assert "timed out" in outcome.error

    @pytest.mark.asyncio
    async def test_fatal_failure_classified(self, executor, registry):
        """FatalCapabilityFailure is not retryable."""
        outcome = await executor.execute(registry.get("broken"), {})
        assert not outcome.retryable
        assert outcome.error.startswith("FatalCapabilityFailure")

    def test_resolve_unknown_raises(self, executor):
        """resolve() raises for unregistered names."""
        with pytest.raises(CapabilityNotFoundError):
            executor.resolve("teleport")

    @pytest.mark.parametrize(
        "error, retryable",
        [
            (RetryableCapabilityFailure("try later"), True),
            (FatalCapabilityFailure("rate limit"), False),
            (TimeoutError(), True),
            (ConnectionError(), True),
            (RuntimeError("HTTP 503 from upstream"), True),
            (RuntimeError("ECONNRESET"), True),
            (ValueError("brand not found"), False),
        ],
    )
    def test_error_classification(self, error, retryable):
        """Known types win; otherwise the message decides."""
        assert classify_error(error) is retryable


class TestScoping:
    """Tests for scope arithmetic."""

    def test_check_scope(self):
        """check_scope() raises ScopeViolation outside the scope."""
        check_scope(frozenset({"lookup"}), "lookup")
        with pytest.raises(ScopeViolation) as exc_info:
            check_scope(frozenset({"lookup"}), "render_image")
        assert exc_info.value.capability == "render_image"

    def test_default_child_scope_is_parent_minus_delegator(self):
        """With nothing requested, the child inherits the parent's scope minus the delegator."""
        scope = derive_child_scope(None, frozenset({"research", "lookup"}), "research")
        assert scope == frozenset({"lookup"})

    @given(
        requested=st.one_of(st.none(), st.frozensets(st.sampled_from("abcdefg"))),
        parent=st.frozensets(st.sampled_from("abcdefg")),
        policy=st.one_of(st.none(), st.frozensets(st.sampled_from("abcdefg"))),
        delegator=st.sampled_from("abcdefg"),
    )
    def test_child_scope_is_subset_of_parent(self, requested, parent, policy, delegator):
        """A child's scope never exceeds its parent's and never contains the delegator."""
        scope = derive_child_scope(requested, parent, delegator, policy)

        assert scope <= parent
        assert delegator not in scope
        if policy is not None:
            assert scope <= policy
        if requested is not None:
            assert scope <= requested
