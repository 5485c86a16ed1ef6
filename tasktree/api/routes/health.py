"""
Health Check Routes
"""

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from tasktree.api.dependencies import get_context, get_metrics
from tasktree.observability.metrics import MetricsCollector
from tasktree.runtime.factory import OrchestratorContext

router = APIRouter()


@router.get("/health")
async def health_check(context: OrchestratorContext = Depends(get_context)) -> dict[str, Any]:
    """Basic health check with worker and anomaly state."""
    monitor = context.governor.monitor
    return {
        "status": "healthy",
        "version": context.settings.app_version,
        "workflows": context.workflows.list_workflows(),
        "workers": [pool.get_stats() for pool in context.workers],
        "spend_paused": bool(monitor and monitor.tripped),
    }


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(collector: MetricsCollector = Depends(get_metrics)) -> str:
    """Metrics in Prometheus text format."""
    return collector.to_prometheus()
