"""
Budget Governor

Authoritative spend and time accounting for every run in a task tree.

Design decisions:
- All mutations serialized behind one asyncio.Lock
- authorize() reserves the estimate; commit() swaps it for the actual cost
- Checks walk the ancestor chain, so a child's spend counts against
  its parent, its grandparent and the tree-wide session ceiling
- Recorded spend is capped at the tightest ceiling; any overage is kept
  separately and the run is force-denied from then on
- External credit check fails closed
- Spend-rate monitor trips block trees registered after the trip

Invariant: for every account, spent + reserved (own and descendants)
never exceeds its ceiling.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from tasktree.budget.anomaly import SpendRateMonitor
from tasktree.core.exceptions import UnknownRunError
from tasktree.core.interfaces import AlertSinkProtocol, CreditCheckProtocol
from tasktree.observability.logging import get_logger
from tasktree.observability.metrics import MetricsCollector

logger = get_logger("tasktree.budget.governor")

_EPSILON = 1e-9


class DenialKind(str, Enum):
    """Why an authorization was refused; decides how the engine reacts."""

    BUDGET = "budget"
    TIME = "time"
    CREDITS = "credits"


@dataclass
class Authorization:
    allowed: bool
    reserved: float = 0.0
    reason: str | None = None
    kind: DenialKind | None = None


@dataclass
class CommitResult:
    recorded: float
    overage: float
    remaining: float


@dataclass
class BudgetSnapshot:
    run_id: str
    ceiling: float
    spent: float
    descendant_spent: float
    reserved: float
    overage: float
    remaining: float
    denied_reason: str | None


@dataclass
class RunAccount:
    """Per-run ledger entry."""

    run_id: str
    ceiling: float
    parent_run_id: str | None = None
    root_run_id: str | None = None
    session_ceiling: float | None = None
    timeout_seconds: float | None = None
    credit_account: str | None = None

    spent: float = 0.0
    reserved: float = 0.0
    descendant_spent: float = 0.0
    descendant_reserved: float = 0.0
    overage: float = 0.0
    denied_reason: str | None = None

    started_at: float = field(default_factory=time.monotonic)
    registered_at: float = 0.0

    @property
    def total_spent(self) -> float:
        return self.spent + self.descendant_spent

    @property
    def exposure(self) -> float:
        """Committed plus reserved spend for this run and all descendants."""
        return self.spent + self.descendant_spent + self.reserved + self.descendant_reserved


class BudgetGovernor:
    """
    Spend/time authority for all active runs.

    Usage:
        await governor.register_run(run_id, ceiling=2.0)
        auth = await governor.authorize(run_id, 0.06)
        if auth.allowed:
            ...
            await governor.commit(run_id, actual_cost, auth.reserved)
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float | None = 300.0,
        credit_check: CreditCheckProtocol | None = None,
        monitor: SpendRateMonitor | None = None,
        alert_sink: AlertSinkProtocol | None = None,
        metrics: MetricsCollector | None = None,
        single_run_alert_usd: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._accounts: dict[str, RunAccount] = {}
        self._lock = asyncio.Lock()
        self._default_timeout = default_timeout_seconds
        self._credit_check = credit_check
        self._monitor = monitor
        self._alert_sink = alert_sink
        self._metrics = metrics
        self._single_run_alert = single_run_alert_usd
        self._clock = clock

    @property
    def monitor(self) -> SpendRateMonitor | None:
        return self._monitor

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_run(
        self,
        run_id: str,
        *,
        ceiling: float,
        parent_run_id: str | None = None,
        session_ceiling: float | None = None,
        timeout_seconds: float | None = None,
        credit_account: str | None = None,
    ) -> RunAccount:
        async with self._lock:
            if run_id in self._accounts:
                return self._accounts[run_id]

            root_run_id = run_id
            if parent_run_id is not None:
                parent = self._require(parent_run_id)
                root_run_id = parent.root_run_id or parent.run_id
                credit_account = credit_account or parent.credit_account

            account = RunAccount(
                run_id=run_id,
                ceiling=max(0.0, ceiling),
                parent_run_id=parent_run_id,
                root_run_id=root_run_id,
                session_ceiling=session_ceiling if parent_run_id is None else None,
                timeout_seconds=timeout_seconds if timeout_seconds is not None else self._default_timeout,
                credit_account=credit_account,
                started_at=self._clock(),
                registered_at=self._monitor.now() if self._monitor else 0.0,
            )
            self._accounts[run_id] = account
            return account

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authorize(
        self,
        run_id: str,
        estimated_cost: float,
        *,
        credit_operation: str | None = None,
        credit_quantity: int = 1,
        capability: str | None = None,
    ) -> Authorization:
        """Check every layer and reserve the estimate if all pass."""
        estimate = max(0.0, float(estimated_cost))

        if credit_operation is not None:
            denial = await self._check_credits(run_id, credit_operation, credit_quantity, capability)
            if denial is not None:
                return denial

        async with self._lock:
            account = self._require(run_id)
            chain = self._chain(account)
            root = chain[-1]

            for acc in chain:
                if acc.denied_reason:
                    return self._deny(account, acc.denied_reason, DenialKind.BUDGET, capability)

            now = self._clock()
            for acc in chain:
                if acc.timeout_seconds is not None and now - acc.started_at > acc.timeout_seconds:
                    return self._deny(account, "timed_out", DenialKind.TIME, capability)

            if self._monitor is not None and self._monitor.blocks(root.registered_at):
                return self._deny(account, "spend_anomaly", DenialKind.BUDGET, capability)

            for acc in chain:
                if acc.exposure + estimate > acc.ceiling + _EPSILON:
                    return self._deny(account, "budget_exceeded", DenialKind.BUDGET, capability)

            if (
                root.session_ceiling is not None
                and root.exposure + estimate > root.session_ceiling + _EPSILON
            ):
                return self._deny(account, "session_budget_exceeded", DenialKind.BUDGET, capability)

            account.reserved += estimate
            for acc in chain[1:]:
                acc.descendant_reserved += estimate

            return Authorization(allowed=True, reserved=estimate)

    async def _check_credits(
        self,
        run_id: str,
        operation: str,
        quantity: int,
        capability: str | None = None,
    ) -> Authorization | None:
        if self._credit_check is None:
            return None

        account = self._accounts.get(run_id)
        if account is None:
            raise UnknownRunError(f"Run not registered: {run_id}", context={"run_id": run_id})
        holder = account.credit_account or account.root_run_id or run_id

        try:
            ok = await self._credit_check.has_credits(holder, operation, quantity)
        except Exception as e:
            logger.warning(
                "Credit check failed; denying",
                run_id=run_id,
                operation=operation,
                error_type=type(e).__name__,
            )
            return self._deny(account, "credit_check_failed", DenialKind.CREDITS, capability)

        if not ok:
            return self._deny(account, "insufficient_credits", DenialKind.CREDITS, capability)
        return None

    def _deny(
        self,
        account: RunAccount,
        reason: str,
        kind: DenialKind,
        capability: str | None = None,
    ) -> Authorization:
        if self._metrics:
            self._metrics.counter("authorizations_denied_total", "Denied authorizations").inc(
                reason=reason
            )
        logger.info(
            "Authorization denied",
            run_id=account.run_id,
            capability=capability,
            reason=reason,
            kind=kind.value,
        )
        return Authorization(allowed=False, reason=reason, kind=kind)

    # ------------------------------------------------------------------
    # Commit / release
    # ------------------------------------------------------------------

    async def commit(self, run_id: str, actual_cost: float, reserved: float = 0.0) -> CommitResult:
        """Replace a reservation with the actual cost, capped at the tightest ceiling."""
        actual = max(0.0, float(actual_cost))
        tripped = False

        async with self._lock:
            account = self._require(run_id)
            chain = self._chain(account)
            root = chain[-1]

            released = min(max(0.0, reserved), account.reserved)
            account.reserved -= released
            for acc in chain[1:]:
                acc.descendant_reserved = max(0.0, acc.descendant_reserved - released)

            headroom = min(acc.ceiling - acc.exposure for acc in chain)
            if root.session_ceiling is not None:
                headroom = min(headroom, root.session_ceiling - root.exposure)

            recorded = min(actual, max(0.0, headroom))
            overage = actual - recorded

            account.spent += recorded
            for acc in chain[1:]:
                acc.descendant_spent += recorded

            if overage > _EPSILON:
                account.overage += overage
                if account.denied_reason is None:
                    account.denied_reason = "budget_exceeded"
            else:
                overage = 0.0

            if self._monitor is not None:
                tripped = self._monitor.record(actual)

            remaining = self._remaining(chain)

        if overage:
            logger.warning(
                "Actual cost exceeded remaining budget; run force-denied",
                run_id=run_id,
                actual=round(actual, 6),
                recorded=round(recorded, 6),
                overage=round(overage, 6),
            )
        if tripped and self._alert_sink is not None:
            await self._alert_sink.alert(
                "spend_anomaly",
                "Spend rate exceeded the configured threshold; new runs are paused.",
                {"threshold": self._monitor.threshold if self._monitor else None},
            )

        return CommitResult(recorded=recorded, overage=overage, remaining=remaining)

    async def force_deny(self, run_id: str, reason: str = "cost_guard") -> None:
        """Deny all further authorizations for this run and its descendants."""
        async with self._lock:
            account = self._accounts.get(run_id)
            if account is None:
                return
            if account.denied_reason is None:
                account.denied_reason = reason
        logger.warning("Run force-denied", run_id=run_id, reason=reason)

    async def release(self, run_id: str) -> BudgetSnapshot | None:
        """Drop a finished run's account. Its spend stays with its ancestors."""
        async with self._lock:
            account = self._accounts.get(run_id)
            if account is None:
                return None
            snapshot = self._snapshot(account)

            if account.reserved > 0:
                for acc in self._chain(account)[1:]:
                    acc.descendant_reserved = max(0.0, acc.descendant_reserved - account.reserved)
                account.reserved = 0.0

            del self._accounts[run_id]

        if (
            account.parent_run_id is None
            and self._single_run_alert is not None
            and snapshot.spent + snapshot.descendant_spent > self._single_run_alert
        ):
            logger.warning(
                "High-cost run",
                run_id=run_id,
                total=round(snapshot.spent + snapshot.descendant_spent, 6),
                threshold=self._single_run_alert,
            )
        return snapshot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_remaining(self, run_id: str) -> float:
        async with self._lock:
            account = self._require(run_id)
            return self._remaining(self._chain(account))

    async def snapshot(self, run_id: str) -> BudgetSnapshot:
        async with self._lock:
            return self._snapshot(self._require(run_id))

    def is_registered(self, run_id: str) -> bool:
        return run_id in self._accounts

    # ------------------------------------------------------------------
    # Internals (call with the lock held)
    # ------------------------------------------------------------------

    def _require(self, run_id: str) -> RunAccount:
        account = self._accounts.get(run_id)
        if account is None:
            raise UnknownRunError(f"Run not registered: {run_id}", context={"run_id": run_id})
        return account

    def _chain(self, account: RunAccount) -> list[RunAccount]:
        """The account followed by each registered ancestor, root last."""
        chain = [account]
        parent_id = account.parent_run_id
        while parent_id is not None:
            parent = self._accounts.get(parent_id)
            if parent is None:
                break
            chain.append(parent)
            parent_id = parent.parent_run_id
        return chain

    def _remaining(self, chain: list[RunAccount]) -> float:
        remaining = min(acc.ceiling - acc.exposure for acc in chain)
        root = chain[-1]
        if root.session_ceiling is not None:
            remaining = min(remaining, root.session_ceiling - root.exposure)
        return max(0.0, remaining)

    def _snapshot(self, account: RunAccount) -> BudgetSnapshot:
        return BudgetSnapshot(
            run_id=account.run_id,
            ceiling=account.ceiling,
            spent=account.spent,
            descendant_spent=account.descendant_spent,
            reserved=account.reserved + account.descendant_reserved,
            overage=account.overage,
            remaining=self._remaining(self._chain(account)),
            denied_reason=account.denied_reason,
        )
