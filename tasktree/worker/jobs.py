"""
Job Model

Durable unit of work: run one workflow step for one session key.

Design decisions:
- At most one open (queued or active) job per session key
- queued → active happens exactly once per attempt, via claim_next
- Terminal statuses (completed, failed, dead_lettered) are final
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tasktree.core.exceptions import InvalidJobTransition, JobNotFoundError
from tasktree.core.types import utc_now


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_open(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.ACTIVE)

    @property
    def is_final(self) -> bool:
        return not self.is_open


_ALLOWED: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.QUEUED, JobStatus.ACTIVE, JobStatus.FAILED}),
    JobStatus.ACTIVE: frozenset(
        {
            JobStatus.ACTIVE,
            JobStatus.QUEUED,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.DEAD_LETTERED,
        }
    ),
    JobStatus.COMPLETED: frozenset({JobStatus.COMPLETED}),
    JobStatus.FAILED: frozenset({JobStatus.FAILED}),
    JobStatus.DEAD_LETTERED: frozenset({JobStatus.DEAD_LETTERED}),
}


def check_transition(job_id: str, current: JobStatus, new: JobStatus) -> None:
    """
    Raises:
        InvalidJobTransition: If `new` cannot follow `current`
    """
    if new not in _ALLOWED[current]:
        raise InvalidJobTransition(
            f"Job {job_id} cannot move from {current.value} to {new.value}",
            context={"job_id": job_id, "from": current.value, "to": new.value},
        )


class EnqueueRequest(BaseModel):
    """Operator trigger for one workflow step."""

    session_key: str = Field(min_length=1, max_length=200)
    workflow_step: str = Field(min_length=1, max_length=100)
    input_payload: dict[str, Any] = Field(default_factory=dict)
    restart: bool = Field(default=False, description="Clear the session before running")


class Job(BaseModel):
    job_id: str
    session_key: str
    workflow_step: str
    input_payload: dict[str, Any] = Field(default_factory=dict)
    restart: bool = False

    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 2
    progress_percent: int = 0
    last_error: str | None = None
    result: dict[str, Any] | None = None
    cancel_requested: bool = False
    worker_id: str | None = None

    run_after: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None

    @property
    def attempts_left(self) -> bool:
        return self.attempts < self.max_attempts

    def status_view(self) -> dict[str, Any]:
        """Client-facing status: status, progress_percent, result?, error?"""
        view: dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress_percent": self.progress_percent,
            "attempts": self.attempts,
        }
        if self.result is not None:
            view["result"] = self.result
        if self.last_error and self.status != JobStatus.COMPLETED:
            view["error"] = self.last_error
        return view


class InMemoryJobStore:
    """
    Process-local job store.

    All mutations happen under one asyncio.Lock, which gives claims the
    same exactly-once behaviour as the SQL store's conditional updates.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def create_or_get_active(self, job: Job) -> tuple[Job, bool]:
        async with self._lock:
            for existing in self._jobs.values():
                if existing.session_key == job.session_key and existing.status.is_open:
                    return existing.model_copy(), False
            self._jobs[job.job_id] = job.model_copy()
            return job.model_copy(), True

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def claim_next(self, worker_id: str) -> Job | None:
        async with self._lock:
            now = self._clock()
            ready = [
                j for j in self._jobs.values()
                if j.status == JobStatus.QUEUED and j.run_after <= now
            ]
            if not ready:
                return None
            job = min(ready, key=lambda j: (j.run_after, j.created_at))
            job.status = JobStatus.ACTIVE
            job.attempts += 1
            job.worker_id = worker_id
            job.updated_at = now
            return job.model_copy()

    async def update(self, job: Job) -> Job:
        async with self._lock:
            current = self._jobs.get(job.job_id)
            if current is None:
                raise JobNotFoundError(f"Job not found: {job.job_id}", context={"job_id": job.job_id})
            check_transition(job.job_id, current.status, job.status)
            stored = job.model_copy(
                update={
                    "updated_at": self._clock(),
                    "cancel_requested": current.cancel_requested or job.cancel_requested,
                    "progress_percent": max(current.progress_percent, job.progress_percent),
                }
            )
            self._jobs[job.job_id] = stored
            return stored.model_copy()

    async def request_cancel(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.status.is_final:
                return job.model_copy()
            now = self._clock()
            if job.status == JobStatus.QUEUED:
                job.status = JobStatus.FAILED
                job.last_error = "cancelled"
                job.finished_at = now
            job.cancel_requested = True
            job.updated_at = now
            return job.model_copy()

    async def set_progress(self, job_id: str, percent: int) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and job.status == JobStatus.ACTIVE and percent > job.progress_percent:
                job.progress_percent = min(percent, 100)
                job.updated_at = self._clock()

    async def list_by_status(self, status: JobStatus) -> list[Job]:
        return sorted(
            (j.model_copy() for j in self._jobs.values() if j.status == status),
            key=lambda j: j.created_at,
        )

    async def purge(self, status: JobStatus, older_than_seconds: float) -> int:
        cutoff = self._clock() - timedelta(seconds=older_than_seconds)
        async with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status == status and (job.finished_at or job.updated_at) < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        return len(expired)
