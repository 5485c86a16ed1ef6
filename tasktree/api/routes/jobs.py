"""
Job Submission Routes
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tasktree.api.dependencies import get_dispatcher
from tasktree.worker.dispatcher import JobDispatcher
from tasktree.worker.jobs import EnqueueRequest

router = APIRouter()


class JobStatusResponse(BaseModel):
    """Client-facing job status."""

    job_id: str
    status: str
    progress_percent: int = 0
    attempts: int = 0
    result: Any = None
    error: str | None = None


@router.post("/jobs", response_model=JobStatusResponse, status_code=202)
async def enqueue_job(
    request: EnqueueRequest,
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """
    Queue a workflow step for a session.

    While a job for the same session key is queued or running, its id is
    returned instead of creating a new one.
    """
    job_id = await dispatcher.enqueue(request)
    return JobStatusResponse(**await dispatcher.get_status(job_id))


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(
    job_id: str,
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """Get job status, progress and (once final) result or error."""
    return JobStatusResponse(**await dispatcher.get_status(job_id))


@router.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(
    job_id: str,
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """Cancel a queued job, or stop a running one at its next checkpoint."""
    job = await dispatcher.cancel(job_id)
    return JobStatusResponse(**job.status_view())
