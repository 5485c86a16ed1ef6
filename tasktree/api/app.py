"""
FastAPI Application Factory

Thin HTTP adapter over the job dispatcher, the session store and the
progress event channel.

Design decisions:
- Factory pattern for testability (a prebuilt context can be injected)
- Lifespan owns the OrchestratorContext and stores it on app.state
- With the embedded worker enabled, the API process also runs a pool
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tasktree.api.middleware import ErrorHandlingMiddleware, TracingMiddleware
from tasktree.api.routes import health, jobs, sessions
from tasktree.config.settings import Settings, get_settings
from tasktree.observability.logging import configure_logging, get_logger
from tasktree.runtime.factory import OrchestratorContext, build_context

logger = get_logger("tasktree.api")


def create_app(
    settings: Settings | None = None,
    context: OrchestratorContext | None = None,
    *,
    start_workers: bool | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Settings to build the context from (defaults to get_settings())
        context: Prebuilt context; the app then does not close it on shutdown
        start_workers: Run an embedded worker pool (defaults to WORKER_EMBEDDED)
        cors_origins: Allowed CORS origins
    """
    settings = settings or (context.settings if context else get_settings())
    embedded = settings.worker.embedded if start_workers is None else start_workers

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = context is None
        ctx = context or build_context(settings)
        if owned:
            await ctx.start()

        if embedded:
            pool = ctx.create_worker_pool()
            await pool.start()

        app.state.context = ctx
        logger.info("API started", environment=settings.environment, embedded_worker=embedded)

        yield

        app.state.context = None
        if owned:
            await ctx.close()
        else:
            for pool in ctx.workers:
                await pool.stop()
        logger.info("API stopped")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(TracingMiddleware)

    app.include_router(health.router, tags=["health"])
    app.include_router(jobs.router, prefix=settings.api_prefix, tags=["jobs"])
    app.include_router(sessions.router, prefix=settings.api_prefix, tags=["sessions"])

    return app


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    obs = settings.observability
    configure_logging(obs.log_level, json_output=obs.log_format == "json", log_file=obs.log_file)
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
