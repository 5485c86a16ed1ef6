"""SQLModel ORM tables for the durable tier."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


class SessionRecord(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[assignment]

    workflow_key: str = Field(primary_key=True)
    session_id: str = Field(index=True, unique=True)
    conversation_handle: str | None = Field(default=None)
    last_step: str | None = Field(default=None)
    cumulative_spend: float = Field(default=0.0)
    version: int = Field(default=1)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobRecord(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[assignment]
    __table_args__ = (
        Index(
            "uq_jobs_session_open",
            "session_key",
            unique=True,
            sqlite_where=text("status IN ('queued', 'active')"),
            postgresql_where=text("status IN ('queued', 'active')"),
        ),
    )

    job_id: str = Field(primary_key=True)
    session_key: str = Field(index=True)
    workflow_step: str
    input_payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    restart: bool = Field(default=False)
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=2)
    progress_percent: int = Field(default=0)
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    result: dict | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    cancel_requested: bool = Field(default=False)
    worker_id: str | None = Field(default=None)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class AuditRecord(SQLModel, table=True):
    __tablename__ = "audit_events"  # type: ignore[assignment]

    event_id: str = Field(primary_key=True)
    event_type: str = Field(index=True)
    run_id: str | None = Field(default=None, index=True)
    root_run_id: str | None = Field(default=None)
    session_key: str | None = Field(default=None, index=True)
    capability: str | None = Field(default=None)
    outcome: str = Field(default="success")
    cost: float = Field(default=0.0)
    details: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
