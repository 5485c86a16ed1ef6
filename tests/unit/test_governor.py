"""
Unit Tests - Budget Governor

Reservation accounting, ancestor roll-up, ceilings, time limits, credit
checks and the spend-rate monitor.
"""

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from tasktree.budget.anomaly import SpendRateMonitor
from tasktree.budget.credits import CreditLedger
from tasktree.budget.governor import BudgetGovernor, DenialKind
from tasktree.core.exceptions import UnknownRunError
from tasktree.worker.alerts import InMemoryAlertSink


class TestAuthorization:
    """Tests for authorize/commit accounting."""

    @pytest.mark.asyncio
    async def test_reserve_then_commit_actual(self):
        """commit() swaps the reservation for the actual cost."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("run-1", ceiling=1.0)

        auth = await governor.authorize("run-1", 0.3)
        assert auth.allowed
        assert (await governor.snapshot("run-1")).reserved == pytest.approx(0.3)

        committed = await governor.commit("run-1", 0.1, auth.reserved)
        snapshot = await governor.snapshot("run-1")
        assert committed.recorded == pytest.approx(0.1)
        assert snapshot.spent == pytest.approx(0.1)
        assert snapshot.reserved == 0
        assert snapshot.remaining == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_estimate_past_ceiling_is_denied(self):
        """An estimate that would cross the ceiling is refused."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("run-1", ceiling=0.5)

        auth = await governor.authorize("run-1", 0.6)
        assert not auth.allowed
        assert auth.reason == "budget_exceeded"
        assert auth.kind == DenialKind.BUDGET

    @pytest.mark.asyncio
    async def test_overrun_is_capped_and_force_denies(self):
        """An actual cost above the remaining budget is capped and blocks the run."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("run-1", ceiling=0.5)

        auth = await governor.authorize("run-1", 0.1)
        committed = await governor.commit("run-1", 0.8, auth.reserved)

        assert committed.recorded == pytest.approx(0.5)
        assert committed.overage == pytest.approx(0.3)
        assert not (await governor.authorize("run-1", 0.0)).allowed

    @pytest.mark.asyncio
    async def test_child_spend_counts_against_ancestors(self):
        """A child's commit shows up in its parent's descendant spend."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("root", ceiling=1.0)
        await governor.register_run("child", ceiling=0.8, parent_run_id="root")

        auth = await governor.authorize("child", 0.4)
        await governor.commit("child", 0.4, auth.reserved)

        root = await governor.snapshot("root")
        assert root.descendant_spent == pytest.approx(0.4)
        assert await governor.get_remaining("child") == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_parent_ceiling_binds_child(self):
        """A child cannot spend past its parent's remaining budget."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("root", ceiling=0.5)
        await governor.register_run("child", ceiling=2.0, parent_run_id="root")

        assert not (await governor.authorize("child", 0.6)).allowed

    @pytest.mark.asyncio
    async def test_session_ceiling_spans_the_tree(self):
        """The root's session ceiling is shared by all descendants."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("root", ceiling=5.0, session_ceiling=1.0)
        await governor.register_run("a", ceiling=1.0, parent_run_id="root")
        await governor.register_run("b", ceiling=1.0, parent_run_id="root")

        auth = await governor.authorize("a", 0.7)
        await governor.commit("a", 0.7, auth.reserved)

        denied = await governor.authorize("b", 0.4)
        assert denied.reason == "session_budget_exceeded"

    @pytest.mark.asyncio
    async def test_force_deny_blocks_descendants(self):
        """A force-denied root blocks its children too."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("root", ceiling=5.0)
        await governor.register_run("child", ceiling=1.0, parent_run_id="root")

        await governor.force_deny("root", "cost_guard")
        auth = await governor.authorize("child", 0.01)
        assert auth.reason == "cost_guard"

    @pytest.mark.asyncio
    async def test_unknown_run_raises(self):
        """Operations on an unregistered run raise UnknownRunError."""
        governor = BudgetGovernor()
        with pytest.raises(UnknownRunError):
            await governor.authorize("missing", 0.1)

    @pytest.mark.asyncio
    async def test_release_drops_account(self):
        """release() returns the final snapshot and forgets the run."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("run-1", ceiling=1.0)
        auth = await governor.authorize("run-1", 0.2)
        await governor.commit("run-1", 0.2, auth.reserved)

        snapshot = await governor.release("run-1")
        assert snapshot.spent == pytest.approx(0.2)
        assert not governor.is_registered("run-1")

    @pytest.mark.asyncio
    async def test_concurrent_authorizations_never_exceed_ceiling(self):
        """Racing reservations never push exposure past the ceiling."""
        governor = BudgetGovernor(default_timeout_seconds=None)
        await governor.register_run("root", ceiling=1.0)
        for i in range(20):
            await governor.register_run(f"child-{i}", ceiling=1.0, parent_run_id="root")

        async def spend(run_id: str) -> bool:
            auth = await governor.authorize(run_id, 0.15)
            if not auth.allowed:
                return False
            await asyncio.sleep(0)
            await governor.commit(run_id, 0.15, auth.reserved)
            return True

        outcomes = await asyncio.gather(*(spend(f"child-{i}") for i in range(20)))
        root = await governor.snapshot("root")

        assert sum(outcomes) == 6
        assert root.descendant_spent <= 1.0 + 1e-9


class TestTimeLimit:
    """Tests for the wall-clock limit."""

    @pytest.mark.asyncio
    async def test_timeout_denies_with_time_kind(self):
        """Authorizations after the time limit are denied as timed out."""
        now = [100.0]
        governor = BudgetGovernor(default_timeout_seconds=30.0, clock=lambda: now[0])
        await governor.register_run("run-1", ceiling=1.0)

        assert (await governor.authorize("run-1", 0.01)).allowed
        now[0] += 31.0

        auth = await governor.authorize("run-1", 0.01)
        assert auth.reason == "timed_out"
        assert auth.kind == DenialKind.TIME


class TestCredits:
    """Tests for the external credit check."""

    @pytest.mark.asyncio
    async def test_insufficient_credits_is_a_credit_denial(self):
        """Credit denials are reported with the credits kind."""
        ledger = CreditLedger(default_balance=0)
        governor = BudgetGovernor(default_timeout_seconds=None, credit_check=ledger)
        await governor.register_run("run-1", ceiling=1.0, credit_account="brand-1")

        auth = await governor.authorize("run-1", 0.06, credit_operation="logo", credit_quantity=4)
        assert auth.reason == "insufficient_credits"
        assert auth.kind == DenialKind.CREDITS

        await ledger.grant("brand-1", 4)
        assert (await governor.authorize("run-1", 0.06, credit_operation="logo", credit_quantity=4)).allowed

    @pytest.mark.asyncio
    async def test_failing_credit_check_denies(self):
        """An erroring credit service fails closed."""

        class Unreachable:
            async def has_credits(self, account, operation, quantity=1):
                raise ConnectionError("credit service down")

        governor = BudgetGovernor(default_timeout_seconds=None, credit_check=Unreachable())
        await governor.register_run("run-1", ceiling=1.0)

        auth = await governor.authorize("run-1", 0.01, credit_operation="logo")
        assert auth.reason == "credit_check_failed"

    @pytest.mark.asyncio
    async def test_children_inherit_credit_account(self):
        """A child checks credits against its root's account."""
        ledger = CreditLedger(default_balance=0)
        await ledger.grant("brand-1", 1)
        governor = BudgetGovernor(default_timeout_seconds=None, credit_check=ledger)
        await governor.register_run("root", ceiling=1.0, credit_account="brand-1")
        await governor.register_run("child", ceiling=1.0, parent_run_id="root")

        assert (await governor.authorize("child", 0.0, credit_operation="mockup")).allowed


class TestSpendRateMonitor:
    """Tests for the spend-rate anomaly monitor."""

    @pytest.mark.asyncio
    async def test_trip_blocks_new_trees_and_alerts(self):
        """After a trip, runs registered later are denied; in-flight runs go on."""
        now = [0.0]
        monitor = SpendRateMonitor(threshold=1.0, window_seconds=60.0, clock=lambda: now[0])
        alerts = InMemoryAlertSink()
        governor = BudgetGovernor(
            default_timeout_seconds=None, monitor=monitor, alert_sink=alerts
        )
        await governor.register_run("early", ceiling=5.0)

        now[0] = 1.0
        auth = await governor.authorize("early", 1.5)
        await governor.commit("early", 1.5, auth.reserved)
        assert monitor.tripped
        assert len(alerts.of_kind("spend_anomaly")) == 1

        now[0] = 2.0
        assert (await governor.authorize("early", 0.1)).allowed

        await governor.register_run("late", ceiling=5.0)
        denied = await governor.authorize("late", 0.1)
        assert denied.reason == "spend_anomaly"

    def test_window_evicts_old_spend(self):
        """Spend older than the window stops counting."""
        now = [0.0]
        monitor = SpendRateMonitor(threshold=10.0, window_seconds=60.0, clock=lambda: now[0])
        monitor.record(4.0)
        now[0] = 61.0
        monitor.record(1.0)

        assert monitor.window_total() == pytest.approx(1.0)

    def test_reset_clears_trip(self):
        """reset() acknowledges the anomaly."""
        monitor = SpendRateMonitor(threshold=1.0, window_seconds=60.0)
        assert monitor.record(2.0) is True
        monitor.reset()
        assert not monitor.tripped


class TestCeilingProperty:
    """Property-based checks of the ceiling invariant."""

    @given(
        ceiling=st.floats(min_value=0.01, max_value=5.0),
        costs=st.lists(
            st.tuples(
                st.floats(min_value=0.0, max_value=1.0),
                st.floats(min_value=0.0, max_value=2.0),
            ),
            max_size=30,
        ),
    )
    @settings(max_examples=100, deadline=None)
    def test_recorded_spend_never_exceeds_ceiling(self, ceiling, costs):
        """Whatever estimates and actual costs arrive, recorded spend stays within the ceiling."""

        async def scenario() -> float:
            governor = BudgetGovernor(default_timeout_seconds=None)
            await governor.register_run("run", ceiling=ceiling)
            for estimate, actual in costs:
                auth = await governor.authorize("run", estimate)
                if auth.allowed:
                    await governor.commit("run", actual, auth.reserved)
            return (await governor.snapshot("run")).spent

        assert asyncio.run(scenario()) <= ceiling + 1e-9
