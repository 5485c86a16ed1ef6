"""
Worker Pool

Consumer side of the job queue: claims jobs and runs them through the
reasoning engine.

Design decisions:
- Fixed concurrency; each slot polls the store and claims atomically
- Job starts go through a sliding-window rate limiter
- Every run sits inside an outer deadline; on expiry the run's token
  is cancelled, the run detached to stop at its next checkpoint and the
  job failed with "timeout"
- Processing never raises: every claimed job ends in a recorded status
- Graceful shutdown on SIGTERM/SIGINT waits for active jobs
"""

import asyncio
import signal
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from tasktree.core.interfaces import AlertSinkProtocol, EventChannelProtocol
from tasktree.core.types import CancellationToken, TerminalResult, reason_message, utc_now
from tasktree.memory.session import SessionStore
from tasktree.observability.audit import AuditEvent, AuditEventType, AuditStorage
from tasktree.observability.events import ProgressEvent, ProgressEventKind, sanitize_result
from tasktree.observability.logging import get_logger
from tasktree.observability.metrics import MetricsCollector
from tasktree.runtime.engine import ReasoningEngine
from tasktree.runtime.observers import ABANDONED_REASON
from tasktree.runtime.spec import TaskSpec
from tasktree.runtime.workflows import WorkflowProfile
from tasktree.worker.alerts import LoggingAlertSink
from tasktree.worker.dispatcher import JobDispatcher
from tasktree.worker.jobs import Job, JobStatus
from tasktree.worker.ratelimit import SlidingWindowRateLimiter

logger = get_logger("tasktree.worker")


@dataclass
class WorkerConfig:
    """Worker configuration."""

    name: str = "tasktree-worker"
    concurrency: int = 2
    poll_interval: float = 0.5
    job_timeout: float = 300.0
    backoff_base: float = 5.0
    backoff_max: float = 60.0
    shutdown_timeout: float = 30.0


@dataclass
class _Outcome:
    status: JobStatus
    reason: str | None = None
    retryable: bool = False
    result: dict[str, Any] | None = None


class WorkerPool:
    """
    Runs queued jobs against one workflow profile.

    Usage:
        pool = WorkerPool(engine, dispatcher, sessions, profile)
        await pool.run()            # blocks until SIGTERM/SIGINT
        # or, embedded:
        await pool.start(); ...; await pool.stop()
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        dispatcher: JobDispatcher,
        sessions: SessionStore,
        workflow: WorkflowProfile,
        *,
        config: WorkerConfig | None = None,
        channel: EventChannelProtocol | None = None,
        alerts: AlertSinkProtocol | None = None,
        audit: AuditStorage | None = None,
        metrics: MetricsCollector | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ):
        self._config = config or WorkerConfig()
        self._engine = engine
        self._dispatcher = dispatcher
        self._store = dispatcher.store
        self._sessions = sessions
        self._workflow = workflow
        self._channel = channel
        self._alerts = alerts or LoggingAlertSink()
        self._audit = audit
        self._metrics = metrics
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(self._config.concurrency)

        self._running = False
        self._workers: list[asyncio.Task] = []
        self._active: dict[str, CancellationToken] = {}
        self._abandoned: set[asyncio.Task] = set()

        dispatcher.add_cancel_listener(self.cancel_local)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_jobs(self) -> list[str]:
        return list(self._active)

    @property
    def abandoned_runs(self) -> int:
        """Runs past their job deadline that have not stopped yet."""
        return len(self._abandoned)

    async def wait_abandoned(self, timeout: float | None = None) -> None:
        """Wait for abandoned runs to reach their next checkpoint."""
        if self._abandoned:
            await asyncio.wait(set(self._abandoned), timeout=timeout)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> None:
        """Run until a termination signal arrives."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

        await self.start()
        try:
            await asyncio.gather(*self._workers)
        except asyncio.CancelledError:
            pass
        logger.info("Worker pool stopped", worker=self._config.name)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info(
            "Starting worker pool",
            worker=self._config.name,
            concurrency=self._config.concurrency,
            workflow=self._workflow.name,
        )
        self._workers = [
            asyncio.create_task(self._worker_loop(i)) for i in range(self._config.concurrency)
        ]

    async def stop(self) -> None:
        """Stop claiming, wait for active jobs, then cancel the slots."""
        if not self._running:
            return
        logger.info("Stopping worker pool", worker=self._config.name, active=len(self._active))
        self._running = False

        start = time.monotonic()
        while self._active:
            if time.monotonic() - start > self._config.shutdown_timeout:
                logger.warning("Timeout waiting for active jobs", active=len(self._active))
                break
            await asyncio.sleep(0.1)

        if self._abandoned:
            remaining = max(0.0, self._config.shutdown_timeout - (time.monotonic() - start))
            _, pending = await asyncio.wait(set(self._abandoned), timeout=remaining)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled abandoned runs at shutdown", count=len(pending))

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    def cancel_local(self, job_id: str) -> bool:
        """Set the cancellation token of a job running in this process."""
        token = self._active.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    def get_stats(self) -> dict:
        return {
            "name": self._config.name,
            "running": self._running,
            "concurrency": self._config.concurrency,
            "active_jobs": self.active_jobs,
            "abandoned_runs": self.abandoned_runs,
        }

    # =========================================================================
    # Claim loop
    # =========================================================================

    async def _worker_loop(self, index: int) -> None:
        worker_id = f"{self._config.name}-{index}"
        logger.debug("Worker slot started", worker_id=worker_id)

        while self._running:
            try:
                job = await self.run_once(worker_id)
                if job is None:
                    await asyncio.sleep(self._config.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Worker slot error", error=e, worker_id=worker_id)
                await asyncio.sleep(self._config.poll_interval)

        logger.debug("Worker slot stopped", worker_id=worker_id)

    async def run_once(self, worker_id: str | None = None) -> Job | None:
        """Claim and process one job; None if nothing was ready."""
        worker_id = worker_id or f"{self._config.name}-0"
        job = await self._store.claim_next(worker_id)
        if job is None:
            return None
        await self._rate_limiter.acquire()
        return await self.process(job)

    # =========================================================================
    # Processing
    # =========================================================================

    async def process(self, job: Job) -> Job:
        """Run a claimed job to a recorded status."""
        token = CancellationToken()
        self._active[job.job_id] = token

        with logger.context(job_id=job.job_id, session_key=job.session_key):
            logger.info(
                "Processing job",
                workflow_step=job.workflow_step,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
            )
            if job.cancel_requested:
                token.cancel()

            spec: TaskSpec | None = None
            result: TerminalResult | None = None
            try:
                spec = await self._prepare(job, token)
                result = await self._run(job, spec, token)
                outcome = self._outcome_of(result)
            except TimeoutError:
                logger.warning("Job deadline expired; run abandoned", timeout=self._config.job_timeout)
                outcome = _Outcome(JobStatus.FAILED, reason=ABANDONED_REASON, retryable=True)
            except Exception:
                logger.exception("Job processing failed")
                outcome = _Outcome(JobStatus.FAILED, reason="internal_error", retryable=True)
            finally:
                self._active.pop(job.job_id, None)

            if result is not None:
                await self._save_session(job, result)
            else:
                run_id = spec.run_id if spec is not None else job.job_id
                await self._publish_failure(job, run_id, outcome.reason)

            return await self._record(job, outcome)

    async def _prepare(self, job: Job, token: CancellationToken) -> TaskSpec:
        if job.restart and job.attempts == 1:
            await self._sessions.clear(job.session_key)
        session = await self._sessions.get_or_create(job.session_key)

        return (
            self._workflow.build_spec(
                job.workflow_step,
                job.input_payload,
                context={"Session": job.session_key},
            )
            .resume_from(session.conversation_handle)
            .for_session(job.session_key)
            .with_credit_account(job.session_key)
            .with_cancellation(token)
            .with_metadata(job_id=job.job_id, attempt=job.attempts)
            .build()
        )

    async def _run(self, job: Job, spec: TaskSpec, token: CancellationToken) -> TerminalResult:
        """
        Run the engine under the job deadline.

        On expiry the token is cancelled and the run is left to stop at its
        next checkpoint; an in-flight capability call is never interrupted.

        Raises:
            TimeoutError: if the deadline passed first
        """
        task = asyncio.create_task(self._engine.run(spec))
        watcher = asyncio.create_task(self._watch_cancel(job.job_id, token))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._config.job_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            watcher.cancel()

        if task in done:
            return task.result()

        token.cancel(ABANDONED_REASON)
        self._abandon(task, spec.run_id)
        raise TimeoutError(f"Job {job.job_id} exceeded {self._config.job_timeout}s")

    def _abandon(self, task: asyncio.Task, run_id: str) -> None:
        self._abandoned.add(task)

        def _collect(finished: asyncio.Task) -> None:
            self._abandoned.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.error("Abandoned run failed", error=error, run_id=run_id)
                return
            logger.info(
                "Abandoned run stopped",
                run_id=run_id,
                state=finished.result().state.value,
                reason=finished.result().reason,
            )

        task.add_done_callback(_collect)

    async def _watch_cancel(self, job_id: str, token: CancellationToken) -> None:
        """Pick up cancellation flags set by other processes."""
        while not token.cancelled:
            await asyncio.sleep(self._config.poll_interval)
            stored = await self._store.get(job_id)
            if stored is not None and stored.cancel_requested:
                logger.info("Cancellation flag observed", job_id=job_id)
                token.cancel()

    @staticmethod
    def _outcome_of(result: TerminalResult) -> _Outcome:
        if result.succeeded:
            return _Outcome(
                JobStatus.COMPLETED,
                result={
                    "run_id": result.run_id,
                    "output": sanitize_result(result.result),
                    "spend": round(result.spend, 6),
                    "turns": result.turns,
                },
            )
        partial = None
        if result.result is not None:
            partial = {"run_id": result.run_id, "partial": sanitize_result(result.result)}
        return _Outcome(
            JobStatus.FAILED,
            reason=result.reason or result.state.value,
            retryable=result.retryable,
            result=partial,
        )

    async def _save_session(self, job: Job, result: TerminalResult) -> None:
        try:
            await self._sessions.update(
                job.session_key,
                lambda s: s.record_run(
                    step=job.workflow_step,
                    handle=result.conversation_handle,
                    spend=result.spend,
                ),
            )
        except Exception as e:
            logger.error("Failed to persist session", error=e, run_id=result.run_id)

    async def _publish_failure(self, job: Job, run_id: str, reason: str | None) -> None:
        """Terminal event for runs that never reported their own end."""
        if self._channel is None:
            return
        try:
            await self._channel.publish(
                ProgressEvent(
                    session_key=job.session_key,
                    run_id=run_id,
                    kind=ProgressEventKind.SESSION_FAILED,
                    job_id=job.job_id,
                    message=reason_message(reason or "internal_error"),
                )
            )
        except Exception as e:
            logger.error("Failed to publish terminal event", error=e)

    # =========================================================================
    # Outcome recording
    # =========================================================================

    async def _record(self, job: Job, outcome: _Outcome) -> Job:
        now = utc_now()
        update: dict[str, Any] = {"worker_id": None}

        if outcome.status == JobStatus.COMPLETED:
            update.update(
                status=JobStatus.COMPLETED,
                result=outcome.result,
                progress_percent=100,
                last_error=None,
                finished_at=now,
            )
            self._count("jobs_completed_total", "Jobs completed")
            logger.info("Job completed")
        elif outcome.retryable and job.attempts_left:
            delay = min(
                self._config.backoff_base * 2 ** (job.attempts - 1),
                self._config.backoff_max,
            )
            update.update(
                status=JobStatus.QUEUED,
                last_error=outcome.reason,
                run_after=now + timedelta(seconds=delay),
            )
            self._count("jobs_retried_total", "Jobs re-queued after a retryable failure")
            logger.warning("Job failed; retry scheduled", reason=outcome.reason, delay_seconds=delay)
        elif outcome.retryable:
            update.update(
                status=JobStatus.DEAD_LETTERED,
                last_error=outcome.reason,
                result=outcome.result,
                finished_at=now,
            )
        else:
            update.update(
                status=JobStatus.FAILED,
                last_error=outcome.reason,
                result=outcome.result,
                finished_at=now,
            )
            self._count("jobs_failed_total", "Jobs failed")
            logger.warning("Job failed", reason=outcome.reason)

        stored = await self._store.update(job.model_copy(update=update))
        if stored.status == JobStatus.DEAD_LETTERED:
            await self._dead_letter(stored)
        return stored

    async def _dead_letter(self, job: Job) -> None:
        self._count("jobs_dead_lettered_total", "Jobs that exhausted their attempts")
        logger.error("Job dead-lettered", attempts=job.attempts, reason=job.last_error)

        context = {
            "job_id": job.job_id,
            "session_key": job.session_key,
            "workflow_step": job.workflow_step,
            "attempts": job.attempts,
            "reason": job.last_error,
        }
        try:
            await self._alerts.alert(
                "dead_letter",
                f"Job {job.job_id} exhausted {job.attempts} attempts",
                context,
            )
        except Exception as e:
            logger.error("Failed to raise dead-letter alert", error=e)

        if self._audit is not None:
            await self._audit.append(
                AuditEvent(
                    event_type=AuditEventType.JOB_DEAD_LETTERED,
                    session_key=job.session_key,
                    outcome="failure",
                    details=context,
                )
            )

    def _count(self, name: str, description: str) -> None:
        if self._metrics is not None:
            self._metrics.counter(name, description).inc(workflow=self._workflow.name)
