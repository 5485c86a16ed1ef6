"""
Runtime Factory

Assembles every long-lived component once at start-up into an
OrchestratorContext that workers and the API share.

Design decisions:
- No module-level singletons: the context is built explicitly and passed on
- Backends are chosen from Settings (memory vs. SQL/Redis)
- The capability registry is frozen before the context is handed out
"""

import importlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from tasktree.budget.anomaly import SpendRateMonitor
from tasktree.budget.credits import CreditLedger
from tasktree.budget.governor import BudgetGovernor
from tasktree.config.settings import Settings, get_settings
from tasktree.core.exceptions import ConfigurationError
from tasktree.core.interfaces import (
    AlertSinkProtocol,
    CreditCheckProtocol,
    EventChannelProtocol,
    JobStoreProtocol,
    ReasoningProviderProtocol,
)
from tasktree.memory.session import (
    InMemorySessionCache,
    InMemorySessionRepository,
    RedisSessionCache,
    SessionStore,
    SqlSessionRepository,
)
from tasktree.observability.audit import AuditStorage, InMemoryAuditStore, SqlAuditStore
from tasktree.observability.events import InMemoryEventChannel, RedisEventChannel
from tasktree.observability.logging import get_logger
from tasktree.observability.metrics import MetricsCollector
from tasktree.runtime.engine import ReasoningEngine
from tasktree.runtime.hooks import HookBus
from tasktree.runtime.observers import AuditTrailObserver, CostCircuitBreaker, ProgressObserver
from tasktree.runtime.workflows import WorkflowRegistry
from tasktree.tools.executor import CapabilityExecutor
from tasktree.tools.registry import CapabilityRegistry

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from tasktree.worker.dispatcher import JobDispatcher
    from tasktree.worker.worker import WorkerPool

logger = get_logger("tasktree.runtime.factory")


@dataclass
class OrchestratorContext:
    """
    Every long-lived component of one process.

    Usage:
        async with build_context(settings) as ctx:
            job_id = await ctx.dispatcher.enqueue(request)
    """

    settings: Settings
    registry: CapabilityRegistry
    executor: CapabilityExecutor
    governor: BudgetGovernor
    hooks: HookBus
    engine: ReasoningEngine
    provider: ReasoningProviderProtocol
    sessions: SessionStore
    job_store: JobStoreProtocol
    dispatcher: "JobDispatcher"
    channel: EventChannelProtocol
    alerts: AlertSinkProtocol
    metrics: MetricsCollector
    workflows: WorkflowRegistry
    audit: AuditStorage | None = None
    credits: CreditLedger | None = None
    db_engine: "Engine | None" = None
    workers: list["WorkerPool"] = field(default_factory=list)

    def create_worker_pool(self, workflow: str | None = None) -> "WorkerPool":
        """Worker pool for one workflow profile, wired to this context."""
        from tasktree.worker.ratelimit import SlidingWindowRateLimiter
        from tasktree.worker.worker import WorkerConfig, WorkerPool

        ws = self.settings.worker
        pool = WorkerPool(
            self.engine,
            self.dispatcher,
            self.sessions,
            self.workflows.get(workflow or self.settings.engine.default_workflow),
            config=WorkerConfig(
                name=ws.name,
                concurrency=ws.concurrency,
                poll_interval=ws.poll_interval,
                job_timeout=ws.job_timeout_seconds,
                backoff_base=ws.backoff_base_seconds,
                backoff_max=ws.backoff_max_seconds,
                shutdown_timeout=ws.shutdown_timeout,
            ),
            channel=self.channel,
            alerts=self.alerts,
            audit=self.audit,
            metrics=self.metrics,
            rate_limiter=SlidingWindowRateLimiter(
                ws.rate_limit_max or ws.concurrency,
                ws.rate_limit_window_seconds,
            ),
        )
        self.workers.append(pool)
        return pool

    async def start(self) -> None:
        if self.db_engine is not None:
            from tasktree.storage.database import init_schema

            init_schema(self.db_engine)
        logger.info(
            "Orchestrator context started",
            capabilities=len(self.registry.list_capabilities()),
            workflows=self.workflows.list_workflows(),
            provider=self.provider.provider_name,
        )

    async def close(self) -> None:
        for pool in self.workers:
            await pool.stop()
        self.workers.clear()

        await self.sessions.close()
        close_channel = getattr(self.channel, "close", None)
        if close_channel is not None:
            await close_channel()
        if self.audit is not None:
            await self.audit.close()
        close_provider = getattr(self.provider, "close", None)
        if close_provider is not None:
            await close_provider()
        if self.db_engine is not None:
            self.db_engine.dispose()
        logger.info("Orchestrator context closed")

    async def __aenter__(self) -> "OrchestratorContext":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()


class OrchestratorBuilder:
    """
    Builder pattern for OrchestratorContext.

    Anything not supplied explicitly is created from Settings:

        ctx = (
            OrchestratorBuilder(settings)
            .with_registry(registry)
            .with_provider(ScriptedReasoningProvider(script))
            .build()
        )
    """

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._registry: CapabilityRegistry | None = None
        self._provider: ReasoningProviderProtocol | None = None
        self._channel: EventChannelProtocol | None = None
        self._alerts: AlertSinkProtocol | None = None
        self._job_store: JobStoreProtocol | None = None
        self._sessions: SessionStore | None = None
        self._audit: AuditStorage | None = None
        self._credit_check: CreditCheckProtocol | None = None
        self._workflows: WorkflowRegistry | None = None
        self._metrics: MetricsCollector | None = None

    def with_registry(self, registry: CapabilityRegistry) -> "OrchestratorBuilder":
        """Use this capability registry (frozen on build)."""
        self._registry = registry
        return self

    def with_provider(self, provider: ReasoningProviderProtocol) -> "OrchestratorBuilder":
        self._provider = provider
        return self

    def with_channel(self, channel: EventChannelProtocol) -> "OrchestratorBuilder":
        self._channel = channel
        return self

    def with_alerts(self, alerts: AlertSinkProtocol) -> "OrchestratorBuilder":
        self._alerts = alerts
        return self

    def with_job_store(self, store: JobStoreProtocol) -> "OrchestratorBuilder":
        self._job_store = store
        return self

    def with_session_store(self, sessions: SessionStore) -> "OrchestratorBuilder":
        self._sessions = sessions
        return self

    def with_audit(self, audit: AuditStorage) -> "OrchestratorBuilder":
        self._audit = audit
        return self

    def with_credit_check(self, credit_check: CreditCheckProtocol) -> "OrchestratorBuilder":
        self._credit_check = credit_check
        return self

    def with_workflows(self, workflows: WorkflowRegistry) -> "OrchestratorBuilder":
        self._workflows = workflows
        return self

    def with_metrics(self, metrics: MetricsCollector) -> "OrchestratorBuilder":
        self._metrics = metrics
        return self

    # -------------------------------------------------------------------------

    def build(self) -> OrchestratorContext:
        """
        Build the context.

        Raises:
            ConfigurationError: If a configured backend or module cannot be set up
        """
        from tasktree.worker.alerts import LoggingAlertSink
        from tasktree.worker.dispatcher import JobDispatcher
        from tasktree.worker.jobs import InMemoryJobStore
        from tasktree.worker.store import SqlJobStore

        s = self._settings
        metrics = self._metrics or MetricsCollector(prefix=s.app_name)

        db_engine = None
        if s.store.backend == "sql" and (
            self._sessions is None or self._job_store is None or self._audit is None
        ):
            from tasktree.storage.database import create_db_engine

            db_engine = create_db_engine(s.store.database_url, echo=s.store.echo_sql)

        registry = self._registry or self._load_registry()
        registry.freeze()

        alerts = self._alerts or LoggingAlertSink()
        audit = self._audit
        if audit is None and s.observability.enable_audit:
            audit = SqlAuditStore(db_engine) if db_engine is not None else InMemoryAuditStore()

        credits: CreditLedger | None = None
        credit_check = self._credit_check
        if credit_check is None and s.budget.credits_enabled:
            credits = CreditLedger(default_balance=s.budget.default_credit_balance)
            credit_check = credits

        monitor = None
        if s.budget.anomaly_enabled:
            monitor = SpendRateMonitor(
                threshold=s.budget.anomaly_threshold_usd,
                window_seconds=s.budget.anomaly_window_seconds,
            )

        governor = BudgetGovernor(
            default_timeout_seconds=s.budget.run_timeout_seconds,
            credit_check=credit_check,
            monitor=monitor,
            alert_sink=alerts,
            metrics=metrics,
            single_run_alert_usd=s.budget.single_run_alert_usd,
        )

        executor = CapabilityExecutor(
            registry,
            metrics=metrics,
            default_timeout=s.engine.capability_timeout_seconds,
        )
        hooks = HookBus()
        provider = self._provider or self._create_provider()
        engine = ReasoningEngine(
            provider,
            executor,
            governor,
            hooks=hooks,
            metrics=metrics,
            parallel_calls=s.engine.parallel_calls,
            provider_turn_estimate=s.engine.provider_turn_estimate_usd,
            channel_size=s.engine.event_buffer_size,
            max_delegation_depth=s.engine.max_delegation_depth,
            child_turn_limit=s.engine.child_turn_limit,
            child_budget=s.budget.child_ceiling_usd,
        )

        sessions = self._sessions or self._create_session_store(db_engine)
        job_store = self._job_store or (
            SqlJobStore(db_engine) if db_engine is not None else InMemoryJobStore()
        )
        dispatcher = JobDispatcher(
            job_store,
            queue_name=s.worker.queue_name,
            max_attempts=s.worker.max_attempts,
            completed_retention_seconds=s.worker.completed_retention_seconds,
            failed_retention_seconds=s.worker.failed_retention_seconds,
            metrics=metrics,
        )
        channel = self._channel or self._create_channel()

        ProgressObserver(channel, on_progress=dispatcher.report_progress).attach(hooks)
        if audit is not None:
            AuditTrailObserver(audit).attach(hooks)
        CostCircuitBreaker(governor, s.budget.cost_guard_usd, audit=audit).attach(hooks)

        return OrchestratorContext(
            settings=s,
            registry=registry,
            executor=executor,
            governor=governor,
            hooks=hooks,
            engine=engine,
            provider=provider,
            sessions=sessions,
            job_store=job_store,
            dispatcher=dispatcher,
            channel=channel,
            alerts=alerts,
            metrics=metrics,
            workflows=self._workflows or self._load_workflows(),
            audit=audit,
            credits=credits,
            db_engine=db_engine,
        )

    # -------------------------------------------------------------------------

    def _load_registry(self) -> CapabilityRegistry:
        registry = CapabilityRegistry()
        for module_name in self._settings.engine.capability_modules:
            try:
                module = importlib.import_module(module_name)
            except ImportError as e:
                raise ConfigurationError(
                    f"Cannot import capability module: {module_name}",
                    context={"module": module_name},
                    cause=e,
                ) from e
            register = getattr(module, "register", None)
            if register is None:
                raise ConfigurationError(
                    f"Capability module has no register(registry): {module_name}",
                    context={"module": module_name},
                )
            register(registry)
            logger.info("Loaded capability module", module=module_name)
        return registry

    def _load_workflows(self) -> WorkflowRegistry:
        path = self._settings.engine.workflow_profiles_path
        if path:
            return WorkflowRegistry.from_directory(Path(path))
        return WorkflowRegistry.default()

    def _create_provider(self) -> ReasoningProviderProtocol:
        ps = self._settings.provider
        if ps.kind == "http":
            from tasktree.reasoning.http import HttpReasoningProvider

            return HttpReasoningProvider(
                ps.base_url,
                api_key=ps.api_key,
                model=ps.model,
                timeout=ps.request_timeout,
                max_retries=ps.max_retries,
                retry_delay=ps.retry_delay,
            )

        from tasktree.reasoning.scripted import ScriptedReasoningProvider

        logger.warning("Using the scripted reasoning provider; every run ends on its first turn")
        return ScriptedReasoningProvider()

    def _create_session_store(self, db_engine: "Engine | None") -> SessionStore:
        s = self._settings
        ttl = s.store.session_cache_ttl_seconds
        cache = (
            RedisSessionCache(
                s.redis.url,
                key_prefix=f"{s.redis.key_prefix}session:",
                default_ttl_seconds=ttl,
            )
            if s.redis.enabled
            else InMemorySessionCache(default_ttl_seconds=ttl)
        )
        durable = (
            SqlSessionRepository(db_engine) if db_engine is not None else InMemorySessionRepository()
        )
        return SessionStore(cache, durable, ttl_seconds=ttl)

    def _create_channel(self) -> EventChannelProtocol:
        s = self._settings
        if s.redis.enabled:
            return RedisEventChannel(s.redis.url, key_prefix=s.redis.key_prefix)
        return InMemoryEventChannel(buffer_size=s.engine.event_buffer_size)


def build_context(settings: Settings | None = None, **components) -> OrchestratorContext:
    """
    Build an OrchestratorContext from settings.

    Keyword arguments name builder components to override, e.g.
    build_context(settings, registry=registry, provider=provider).
    """
    builder = OrchestratorBuilder(settings)
    for name, value in components.items():
        method = getattr(builder, f"with_{name}", None)
        if method is None:
            raise TypeError(f"Unknown component: {name}")
        method(value)
    return builder.build()
