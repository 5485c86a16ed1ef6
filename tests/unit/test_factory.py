"""
Unit Tests - Runtime Factory, Settings and Worker CLI
"""

import pytest
from pydantic import ValidationError

from tasktree.config.settings import Settings, StoreSettings, WorkerSettings
from tasktree.core.exceptions import ConfigurationError
from tasktree.memory.session import SqlSessionRepository
from tasktree.reasoning.scripted import ScriptedReasoningProvider
from tasktree.runtime.factory import build_context
from tasktree.worker.__main__ import _apply_overrides, parse_args
from tasktree.worker.jobs import EnqueueRequest, InMemoryJobStore
from tasktree.worker.store import SqlJobStore


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        """Defaults give an in-memory, embedded-worker setup."""
        settings = Settings()

        assert settings.store.backend == "memory"
        assert settings.worker.embedded
        assert settings.budget.session_ceiling_usd == 2.0
        assert not settings.is_production

    def test_frozen(self):
        """Settings cannot be mutated; copies are made with model_copy."""
        settings = Settings()
        with pytest.raises(ValidationError):
            settings.debug = True

        copied = settings.model_copy(update={"debug": True})
        assert copied.debug

    def test_environment_overrides(self, monkeypatch):
        """Nested settings read their own prefixed variables."""
        monkeypatch.setenv("WORKER_CONCURRENCY", "7")
        monkeypatch.setenv("BUDGET_RUN_CEILING_USD", "0.75")

        settings = Settings()
        assert settings.worker.concurrency == 7
        assert settings.budget.run_ceiling_usd == 0.75


class TestBuildContext:
    """Tests for build_context()."""

    @pytest.mark.asyncio
    async def test_memory_context(self, registry):
        """The memory backend wires in-memory stores and freezes the registry."""
        async with build_context(Settings(), registry=registry) as ctx:
            assert isinstance(ctx.job_store, InMemoryJobStore)
            assert isinstance(ctx.provider, ScriptedReasoningProvider)
            assert ctx.registry.frozen
            assert ctx.workflows.list_workflows() == ["brand_wizard"]

            pool = ctx.create_worker_pool()
            assert ctx.workers == [pool]

    @pytest.mark.asyncio
    async def test_sql_context(self, registry):
        """The SQL backend uses SQL stores on one engine."""
        settings = Settings(store=StoreSettings(backend="sql", database_url="sqlite://"))

        async with build_context(settings, registry=registry) as ctx:
            assert isinstance(ctx.job_store, SqlJobStore)
            assert ctx.db_engine is not None

            job_id = await ctx.dispatcher.enqueue(
                EnqueueRequest(session_key="brand-1", workflow_step="social-analysis")
            )
            assert (await ctx.dispatcher.get(job_id)).session_key == "brand-1"

    def test_session_store_over_sql(self, registry):
        """Sessions use the SQL durable tier when the backend is SQL."""
        settings = Settings(store=StoreSettings(backend="sql", database_url="sqlite://"))
        ctx = build_context(settings, registry=registry)

        assert isinstance(ctx.sessions.durable, SqlSessionRepository)
        ctx.db_engine.dispose()

    def test_unknown_component(self):
        """Unknown component names are rejected."""
        with pytest.raises(TypeError):
            build_context(Settings(), teleporter=object())

    def test_missing_capability_module(self):
        """An unimportable capability module is a configuration error."""
        settings = Settings()
        engine = settings.engine.model_copy(update={"capability_modules": ["tasktree.no_such_module"]})

        with pytest.raises(ConfigurationError):
            build_context(settings.model_copy(update={"engine": engine}))

    def test_unknown_default_workflow(self, registry):
        """A pool for an unregistered workflow cannot be created."""
        ctx = build_context(Settings(), registry=registry)
        with pytest.raises(ConfigurationError):
            ctx.create_worker_pool("nope")


class TestWorkerCli:
    """Tests for the worker entry point's argument handling."""

    def test_defaults(self):
        """No flags: run the default workflow at configured concurrency."""
        args = parse_args([])
        assert args.workflow is None
        assert args.concurrency is None
        assert not args.purge

    def test_concurrency_override(self):
        """--concurrency replaces the configured worker concurrency."""
        settings = Settings(worker=WorkerSettings(concurrency=2))
        args = parse_args(["--workflow", "brand_wizard", "--concurrency", "5", "--purge"])

        updated = _apply_overrides(settings, args)
        assert updated.worker.concurrency == 5
        assert settings.worker.concurrency == 2
        assert args.purge
