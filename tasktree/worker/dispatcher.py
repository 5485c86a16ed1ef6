"""
Job Dispatcher

Producer side of the job queue: enqueue, status, cancellation, retention.

Design decisions:
- enqueue is idempotent per session key while a job is queued or active
- job ids are "{queue}-{uuid}" so they stay unique across queues
- Cancelling an active job flags it durably and notifies local listeners,
  so a worker in this process cancels the run immediately and workers in
  other processes pick the flag up on their next poll
"""

from collections.abc import Callable

from tasktree.core.exceptions import JobNotFoundError
from tasktree.core.interfaces import JobStoreProtocol
from tasktree.core.types import new_id
from tasktree.observability.logging import get_logger
from tasktree.observability.metrics import MetricsCollector
from tasktree.worker.jobs import EnqueueRequest, Job, JobStatus

logger = get_logger("tasktree.worker.dispatcher")

CancelListener = Callable[[str], None]


class JobDispatcher:
    """
    Usage:
        dispatcher = JobDispatcher(InMemoryJobStore())
        job_id = await dispatcher.enqueue(
            EnqueueRequest(session_key="brand-1", workflow_step="social-analysis")
        )
        status = await dispatcher.get_status(job_id)
    """

    def __init__(
        self,
        store: JobStoreProtocol,
        *,
        queue_name: str = "tasktree",
        max_attempts: int = 2,
        completed_retention_seconds: float = 86400.0,
        failed_retention_seconds: float = 604800.0,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._queue_name = queue_name
        self._max_attempts = max_attempts
        self._completed_retention = completed_retention_seconds
        self._failed_retention = failed_retention_seconds
        self._metrics = metrics
        self._cancel_listeners: list[CancelListener] = []

    @property
    def store(self) -> JobStoreProtocol:
        return self._store

    @property
    def queue_name(self) -> str:
        return self._queue_name

    def add_cancel_listener(self, listener: CancelListener) -> None:
        self._cancel_listeners.append(listener)

    async def enqueue(self, request: EnqueueRequest) -> str:
        """
        Queue one workflow step for a session.

        Returns the id of the new job, or of the job already queued or
        running for this session key.
        """
        job = Job(
            job_id=new_id(self._queue_name),
            session_key=request.session_key,
            workflow_step=request.workflow_step,
            input_payload=request.input_payload,
            restart=request.restart,
            max_attempts=self._max_attempts,
        )
        stored, created = await self._store.create_or_get_active(job)

        if created:
            logger.info(
                "Job enqueued",
                job_id=stored.job_id,
                session_key=stored.session_key,
                workflow_step=stored.workflow_step,
            )
            self._count("jobs_enqueued_total", "Jobs accepted into the queue")
        else:
            logger.info(
                "Job already open for session",
                job_id=stored.job_id,
                session_key=stored.session_key,
                status=stored.status.value,
            )
            self._count("jobs_deduplicated_total", "Enqueues answered with an open job")
        return stored.job_id

    async def get(self, job_id: str) -> Job:
        """
        Raises:
            JobNotFoundError: If the job does not exist or was purged
        """
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}", context={"job_id": job_id})
        return job

    async def get_status(self, job_id: str) -> dict:
        return (await self.get(job_id)).status_view()

    async def cancel(self, job_id: str) -> Job:
        """
        Cancel a job.

        A queued job fails immediately with reason "cancelled"; an active
        job has its run's cancellation token set. Final jobs are returned
        unchanged.
        """
        job = await self._store.request_cancel(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}", context={"job_id": job_id})

        if job.status == JobStatus.ACTIVE:
            for listener in self._cancel_listeners:
                listener(job_id)
        logger.info("Job cancellation requested", job_id=job_id, status=job.status.value)
        return job

    async def report_progress(self, job_id: str, percent: int) -> None:
        await self._store.set_progress(job_id, percent)

    async def purge_expired(self) -> dict[str, int]:
        """Delete final jobs past their retention window."""
        counts = {
            JobStatus.COMPLETED.value: await self._store.purge(
                JobStatus.COMPLETED, self._completed_retention
            ),
            JobStatus.FAILED.value: await self._store.purge(
                JobStatus.FAILED, self._failed_retention
            ),
            JobStatus.DEAD_LETTERED.value: await self._store.purge(
                JobStatus.DEAD_LETTERED, self._failed_retention
            ),
        }
        return counts

    def _count(self, name: str, description: str) -> None:
        if self._metrics is not None:
            self._metrics.counter(name, description).inc(queue=self._queue_name)
