"""
SQL Job Store

Durable job queue on SQLModel/SQLAlchemy.

Design decisions:
- Claims are conditional UPDATEs (status = 'queued'); a lost race shows up
  as rowcount != 1 and the claimer simply picks the next candidate
- A partial unique index keeps one open job per session key, so
  create_or_get_active is safe across processes
- Sync sessions behind asyncio.to_thread, like the other SQL repositories
"""

import asyncio
from datetime import timedelta

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session as DbSession
from sqlmodel import col, select

from tasktree.core.exceptions import JobNotFoundError
from tasktree.core.types import utc_now
from tasktree.observability.logging import get_logger
from tasktree.storage.database import from_db_datetime, to_db_datetime
from tasktree.storage.models import JobRecord
from tasktree.worker.jobs import Job, JobStatus, check_transition

logger = get_logger("tasktree.worker.store")

_OPEN = (JobStatus.QUEUED.value, JobStatus.ACTIVE.value)


def _to_job(row: JobRecord) -> Job:
    return Job(
        job_id=row.job_id,
        session_key=row.session_key,
        workflow_step=row.workflow_step,
        input_payload=dict(row.input_payload or {}),
        restart=row.restart,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        progress_percent=row.progress_percent,
        last_error=row.last_error,
        result=row.result,
        cancel_requested=row.cancel_requested,
        worker_id=row.worker_id,
        run_after=from_db_datetime(row.run_after),
        created_at=from_db_datetime(row.created_at),
        updated_at=from_db_datetime(row.updated_at),
        finished_at=from_db_datetime(row.finished_at),
    )


def _to_record(job: Job) -> JobRecord:
    return JobRecord(
        job_id=job.job_id,
        session_key=job.session_key,
        workflow_step=job.workflow_step,
        input_payload=job.input_payload,
        restart=job.restart,
        status=job.status.value,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        progress_percent=job.progress_percent,
        last_error=job.last_error,
        result=job.result,
        cancel_requested=job.cancel_requested,
        worker_id=job.worker_id,
        run_after=to_db_datetime(job.run_after),
        created_at=to_db_datetime(job.created_at),
        updated_at=to_db_datetime(job.updated_at),
        finished_at=to_db_datetime(job.finished_at) if job.finished_at else None,
    )


class SqlJobStore:
    def __init__(self, engine: Engine):
        self._engine = engine

    # -------------------------------------------------------------------------

    async def create_or_get_active(self, job: Job) -> tuple[Job, bool]:
        return await asyncio.to_thread(self._create_or_get_active_sync, job)

    def _find_open(self, db: DbSession, session_key: str) -> JobRecord | None:
        return db.exec(
            select(JobRecord)
            .where(JobRecord.session_key == session_key)
            .where(col(JobRecord.status).in_(_OPEN))
            .limit(1)
        ).first()

    def _create_or_get_active_sync(self, job: Job) -> tuple[Job, bool]:
        with DbSession(self._engine) as db:
            existing = self._find_open(db, job.session_key)
            if existing is not None:
                return _to_job(existing), False

            db.add(_to_record(job))
            try:
                db.commit()
            except IntegrityError:
                # Another process opened a job for this key first.
                db.rollback()
                existing = self._find_open(db, job.session_key)
                if existing is None:
                    raise
                return _to_job(existing), False
            return job.model_copy(), True

    # -------------------------------------------------------------------------

    async def get(self, job_id: str) -> Job | None:
        return await asyncio.to_thread(self._get_sync, job_id)

    def _get_sync(self, job_id: str) -> Job | None:
        with DbSession(self._engine) as db:
            row = db.get(JobRecord, job_id)
            return _to_job(row) if row else None

    # -------------------------------------------------------------------------

    async def claim_next(self, worker_id: str) -> Job | None:
        return await asyncio.to_thread(self._claim_next_sync, worker_id)

    def _claim_next_sync(self, worker_id: str) -> Job | None:
        with DbSession(self._engine) as db:
            while True:
                now = to_db_datetime(utc_now())
                candidate = db.exec(
                    select(JobRecord)
                    .where(JobRecord.status == JobStatus.QUEUED.value)
                    .where(col(JobRecord.run_after) <= now)
                    .order_by(col(JobRecord.run_after).asc(), col(JobRecord.created_at).asc())
                    .limit(1)
                ).first()
                if candidate is None:
                    return None

                result = db.exec(  # type: ignore[call-overload]
                    sa_update(JobRecord)
                    .where(col(JobRecord.job_id) == candidate.job_id)
                    .where(col(JobRecord.status) == JobStatus.QUEUED.value)
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempts=col(JobRecord.attempts) + 1,
                        worker_id=worker_id,
                        updated_at=now,
                    )
                )
                if result.rowcount != 1:
                    db.rollback()
                    continue

                db.commit()
                claimed = db.get(JobRecord, candidate.job_id)
                if claimed is None:
                    continue
                db.refresh(claimed)
                return _to_job(claimed)

    # -------------------------------------------------------------------------

    async def update(self, job: Job) -> Job:
        return await asyncio.to_thread(self._update_sync, job)

    def _update_sync(self, job: Job) -> Job:
        now = utc_now()
        with DbSession(self._engine) as db:
            row = db.get(JobRecord, job.job_id)
            if row is None:
                raise JobNotFoundError(f"Job not found: {job.job_id}", context={"job_id": job.job_id})
            check_transition(job.job_id, JobStatus(row.status), job.status)

            row.status = job.status.value
            row.attempts = job.attempts
            row.max_attempts = job.max_attempts
            row.progress_percent = max(row.progress_percent, job.progress_percent)
            row.last_error = job.last_error
            row.result = job.result
            row.cancel_requested = row.cancel_requested or job.cancel_requested
            row.worker_id = job.worker_id
            row.run_after = to_db_datetime(job.run_after)
            row.updated_at = to_db_datetime(now)
            row.finished_at = to_db_datetime(job.finished_at) if job.finished_at else None
            db.add(row)
            db.commit()
            db.refresh(row)
            return _to_job(row)

    async def request_cancel(self, job_id: str) -> Job | None:
        return await asyncio.to_thread(self._request_cancel_sync, job_id)

    def _request_cancel_sync(self, job_id: str) -> Job | None:
        now = to_db_datetime(utc_now())
        with DbSession(self._engine) as db:
            db.exec(  # type: ignore[call-overload]
                sa_update(JobRecord)
                .where(col(JobRecord.job_id) == job_id)
                .where(col(JobRecord.status) == JobStatus.QUEUED.value)
                .values(
                    status=JobStatus.FAILED.value,
                    last_error="cancelled",
                    cancel_requested=True,
                    finished_at=now,
                    updated_at=now,
                )
            )
            db.exec(  # type: ignore[call-overload]
                sa_update(JobRecord)
                .where(col(JobRecord.job_id) == job_id)
                .where(col(JobRecord.status) == JobStatus.ACTIVE.value)
                .values(cancel_requested=True, updated_at=now)
            )
            db.commit()
            row = db.get(JobRecord, job_id)
            return _to_job(row) if row else None

    async def set_progress(self, job_id: str, percent: int) -> None:
        await asyncio.to_thread(self._set_progress_sync, job_id, min(percent, 100))

    def _set_progress_sync(self, job_id: str, percent: int) -> None:
        with DbSession(self._engine) as db:
            db.exec(  # type: ignore[call-overload]
                sa_update(JobRecord)
                .where(col(JobRecord.job_id) == job_id)
                .where(col(JobRecord.status) == JobStatus.ACTIVE.value)
                .where(col(JobRecord.progress_percent) < percent)
                .values(progress_percent=percent, updated_at=to_db_datetime(utc_now()))
            )
            db.commit()

    # -------------------------------------------------------------------------

    async def list_by_status(self, status: JobStatus) -> list[Job]:
        return await asyncio.to_thread(self._list_by_status_sync, status)

    def _list_by_status_sync(self, status: JobStatus) -> list[Job]:
        with DbSession(self._engine) as db:
            rows = db.exec(
                select(JobRecord)
                .where(JobRecord.status == status.value)
                .order_by(col(JobRecord.created_at).asc())
            ).all()
            return [_to_job(row) for row in rows]

    async def purge(self, status: JobStatus, older_than_seconds: float) -> int:
        return await asyncio.to_thread(self._purge_sync, status, older_than_seconds)

    def _purge_sync(self, status: JobStatus, older_than_seconds: float) -> int:
        cutoff = to_db_datetime(utc_now() - timedelta(seconds=older_than_seconds))
        with DbSession(self._engine) as db:
            result = db.exec(  # type: ignore[call-overload]
                sa_delete(JobRecord)
                .where(col(JobRecord.status) == status.value)
                .where(col(JobRecord.finished_at) < cutoff)
            )
            db.commit()
            purged = result.rowcount or 0
        if purged:
            logger.info("Purged expired jobs", status=status.value, count=purged)
        return purged
