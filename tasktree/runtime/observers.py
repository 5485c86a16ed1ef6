"""
Built-in Hook Observers

Subscribers that turn lifecycle hooks into progress events, audit
records and an independent per-tree cost guard.

Design decisions:
- Observers hold their own state; they never read engine internals
- Progress percentages only ever increase within a session
- Only top-level runs emit session_started / session_complete / session_failed
- Runs abandoned at the job deadline emit no terminal event of their own
- Published messages come from REASON_MESSAGES, never from exception text
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from tasktree.budget.governor import BudgetGovernor
from tasktree.core.interfaces import EventChannelProtocol
from tasktree.core.types import RunState, reason_message
from tasktree.observability.audit import AuditEvent, AuditEventType, AuditStorage
from tasktree.observability.events import ProgressEvent, ProgressEventKind, sanitize_result
from tasktree.observability.logging import get_logger
from tasktree.runtime.hooks import HookBus, HookEvent, HookKind

logger = get_logger("tasktree.runtime.observers")


# Completion percentage reached once a capability finishes.
DEFAULT_PROGRESS_MAP: dict[str, int] = {
    "validate_input": 5,
    "check_credits": 10,
    "social_analyzer": 30,
    "brand_generator": 50,
    "save_brand_data": 55,
    "logo_creator": 75,
    "mockup_renderer": 85,
    "profit_calculator": 90,
    "deduct_credit": 92,
    "queue_crm_sync": 95,
    "send_email": 98,
}

ProgressCallback = Callable[[str, int], Awaitable[None]]

# Cancellation reason the worker sets when a run outlives its job deadline.
ABANDONED_REASON = "timeout"

_BLOCKED_REASONS = frozenset(
    {"scope_violation", "unknown_capability", "insufficient_credits", "credit_check_failed"}
)
_BUDGET_REASONS = frozenset(
    {"budget_exceeded", "session_budget_exceeded", "spend_anomaly", "cost_guard"}
)


@dataclass
class _SessionProgress:
    percent: int = 0
    completed: int = 0


class ProgressObserver:
    """
    Maps hook events onto the external progress channel.

    Usage:
        observer = ProgressObserver(channel, on_progress=dispatcher.report_progress)
        observer.attach(bus)
    """

    def __init__(
        self,
        channel: EventChannelProtocol,
        *,
        progress_map: dict[str, int] | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self._channel = channel
        self._map = dict(DEFAULT_PROGRESS_MAP if progress_map is None else progress_map)
        self._on_progress = on_progress
        self._progress: dict[str, _SessionProgress] = {}

    def attach(self, bus: HookBus) -> None:
        bus.subscribe(HookKind.RUN_STARTED, self.on_run_started)
        bus.subscribe(HookKind.PRE_CALL, self.on_pre_call)
        bus.subscribe(HookKind.POST_CALL, self.on_post_call)
        bus.subscribe(HookKind.CALL_FAILED, self.on_call_failed)
        bus.subscribe(HookKind.RUN_ENDED, self.on_run_ended)

    def percent_for(self, root_run_id: str) -> int:
        progress = self._progress.get(root_run_id)
        return progress.percent if progress else 0

    def _state(self, event: HookEvent) -> _SessionProgress:
        key = event.root_run_id or event.run_id
        return self._progress.setdefault(key, _SessionProgress())

    async def _publish(self, event: HookEvent, kind: ProgressEventKind, **fields) -> None:
        if event.session_key is None:
            return
        await self._channel.publish(
            ProgressEvent(
                session_key=event.session_key,
                run_id=event.root_run_id or event.run_id,
                kind=kind,
                job_id=event.job_id,
                **fields,
            )
        )

    async def on_run_started(self, event: HookEvent) -> None:
        if not event.is_top_level:
            return
        progress = self._state(event)
        await self._publish(
            event,
            ProgressEventKind.SESSION_STARTED,
            progress_percent=progress.percent,
            message="Started.",
        )

    async def on_pre_call(self, event: HookEvent) -> None:
        progress = self._state(event)
        await self._publish(
            event,
            ProgressEventKind.TOOL_START,
            tool=event.capability,
            progress_percent=progress.percent,
        )

    async def on_post_call(self, event: HookEvent) -> None:
        progress = self._state(event)
        progress.completed += 1
        target = self._map.get(event.capability or "", min(progress.completed * 10, 95))
        progress.percent = max(progress.percent, target)

        await self._publish(
            event,
            ProgressEventKind.TOOL_COMPLETE,
            tool=event.capability,
            progress_percent=progress.percent,
        )
        if self._on_progress is not None and event.job_id:
            await self._on_progress(event.job_id, progress.percent)

    async def on_call_failed(self, event: HookEvent) -> None:
        progress = self._state(event)
        await self._publish(
            event,
            ProgressEventKind.TOOL_ERROR,
            tool=event.capability,
            progress_percent=progress.percent,
            message=reason_message(event.reason or "capability_failed"),
        )

    async def on_run_ended(self, event: HookEvent) -> None:
        if not event.is_top_level:
            return
        self._progress.pop(event.root_run_id or event.run_id, None)

        if event.state == RunState.SUCCEEDED:
            await self._publish(
                event,
                ProgressEventKind.SESSION_COMPLETE,
                progress_percent=100,
                message="Completed.",
                result=sanitize_result(event.result),
            )
            if self._on_progress is not None and event.job_id:
                await self._on_progress(event.job_id, 100)
        elif event.reason == ABANDONED_REASON:
            # The worker published session_failed when it gave up on the run.
            return
        else:
            await self._publish(
                event,
                ProgressEventKind.SESSION_FAILED,
                message=reason_message(event.reason or "internal_error"),
            )


class AuditTrailObserver:
    """Appends an audit record for every lifecycle event."""

    def __init__(self, store: AuditStorage):
        self._store = store

    def attach(self, bus: HookBus) -> None:
        bus.subscribe(HookKind.RUN_STARTED, self.on_event)
        bus.subscribe(HookKind.POST_CALL, self.on_event)
        bus.subscribe(HookKind.CALL_FAILED, self.on_event)
        bus.subscribe(HookKind.RUN_ENDED, self.on_event)

    async def on_event(self, event: HookEvent) -> None:
        record = AuditEvent(
            event_type=self._event_type(event),
            run_id=event.run_id,
            root_run_id=event.root_run_id,
            session_key=event.session_key,
            capability=event.capability,
            outcome=self._outcome(event),
            cost=event.cost if event.kind != HookKind.RUN_ENDED else event.spend,
            details=self._details(event),
        )
        await self._store.append(record)

    @staticmethod
    def _event_type(event: HookEvent) -> AuditEventType:
        if event.kind == HookKind.RUN_STARTED:
            return AuditEventType.RUN_STARTED
        if event.kind == HookKind.POST_CALL:
            return AuditEventType.CAPABILITY_INVOKED
        if event.kind == HookKind.CALL_FAILED:
            if event.reason in _BLOCKED_REASONS:
                return AuditEventType.CAPABILITY_BLOCKED
            return AuditEventType.CAPABILITY_FAILED
        if event.reason in _BUDGET_REASONS:
            return AuditEventType.BUDGET_DENIED
        return AuditEventType.RUN_ENDED

    @staticmethod
    def _outcome(event: HookEvent) -> str:
        if event.kind == HookKind.CALL_FAILED:
            return "blocked" if event.reason in _BLOCKED_REASONS else "failure"
        if event.kind == HookKind.RUN_ENDED and event.state != RunState.SUCCEEDED:
            return "failure"
        return "success"

    @staticmethod
    def _details(event: HookEvent) -> dict:
        details: dict = {"depth": event.depth}
        if event.parent_run_id:
            details["parent_run_id"] = event.parent_run_id
        if event.job_id:
            details["job_id"] = event.job_id
        if event.reason:
            details["reason"] = event.reason
        if event.kind == HookKind.RUN_ENDED:
            details["state"] = event.state.value if event.state else None
            details["turns"] = event.turns
        if event.kind == HookKind.CALL_FAILED:
            details["retryable"] = event.retryable
        return details


class CostCircuitBreaker:
    """
    Independent per-tree cost guard.

    Totals the cost every capability call reports, per task tree, and
    force-denies the tree's root run in the governor once the total
    passes the limit. Runs after the governor's own accounting, so it
    catches capabilities whose actual cost drifts from their estimates.
    """

    def __init__(
        self,
        governor: BudgetGovernor,
        limit: float = 2.5,
        audit: AuditStorage | None = None,
    ):
        self._governor = governor
        self._limit = limit
        self._audit = audit
        self._totals: dict[str, float] = {}
        self._tripped: set[str] = set()

    @property
    def limit(self) -> float:
        return self._limit

    def total_for(self, root_run_id: str) -> float:
        return self._totals.get(root_run_id, 0.0)

    def attach(self, bus: HookBus) -> None:
        bus.subscribe(HookKind.POST_CALL, self.on_cost)
        bus.subscribe(HookKind.CALL_FAILED, self.on_cost)
        bus.subscribe(HookKind.RUN_ENDED, self.on_run_ended)

    async def on_cost(self, event: HookEvent) -> None:
        root = event.root_run_id or event.run_id
        total = self._totals.get(root, 0.0) + max(0.0, event.cost)
        self._totals[root] = total

        if total > self._limit and root not in self._tripped:
            self._tripped.add(root)
            logger.warning(
                "Cost guard tripped",
                root_run_id=root,
                total=round(total, 6),
                limit=self._limit,
            )
            await self._governor.force_deny(root, "cost_guard")
            if self._audit is not None:
                await self._audit.append(
                    AuditEvent(
                        event_type=AuditEventType.BUDGET_FORCE_DENIED,
                        run_id=event.run_id,
                        root_run_id=root,
                        session_key=event.session_key,
                        capability=event.capability,
                        outcome="blocked",
                        cost=total,
                        details={"reason": "cost_guard", "limit": self._limit},
                    )
                )

    async def on_run_ended(self, event: HookEvent) -> None:
        if event.is_top_level:
            root = event.root_run_id or event.run_id
            self._totals.pop(root, None)
            self._tripped.discard(root)
