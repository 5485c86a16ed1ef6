"""
FastAPI Dependencies

Components come from the OrchestratorContext stored on app.state by the
lifespan; a missing context yields 503 rather than a crash.
"""

from fastapi import Depends, HTTPException, Request

from tasktree.core.interfaces import EventChannelProtocol
from tasktree.memory.session import SessionStore
from tasktree.observability.metrics import MetricsCollector
from tasktree.runtime.factory import OrchestratorContext
from tasktree.worker.dispatcher import JobDispatcher


async def get_context(request: Request) -> OrchestratorContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Orchestrator not available")
    return context


async def get_dispatcher(context: OrchestratorContext = Depends(get_context)) -> JobDispatcher:
    return context.dispatcher


async def get_session_store(context: OrchestratorContext = Depends(get_context)) -> SessionStore:
    return context.sessions


async def get_event_channel(
    context: OrchestratorContext = Depends(get_context),
) -> EventChannelProtocol:
    return context.channel


async def get_metrics(context: OrchestratorContext = Depends(get_context)) -> MetricsCollector:
    return context.metrics
