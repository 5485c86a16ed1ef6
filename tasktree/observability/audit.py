"""
Audit Trail

Records every significant runtime action for debugging and cost review.

Design decisions:
- Structured events, one per hook firing or governor decision
- Multiple storage backends (in-memory for tests, SQL for durability)
- Query by run or session
- Retention handled by the SQL backend's purge()
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from tasktree.core.types import new_id, utc_now
from tasktree.storage.database import from_db_datetime, to_db_datetime
from tasktree.storage.models import AuditRecord


class AuditEventType(str, Enum):
    """Types of audit events."""

    RUN_STARTED = "run.started"
    RUN_ENDED = "run.ended"

    CAPABILITY_INVOKED = "capability.invoked"
    CAPABILITY_FAILED = "capability.failed"
    CAPABILITY_BLOCKED = "capability.blocked"

    BUDGET_DENIED = "budget.denied"
    BUDGET_FORCE_DENIED = "budget.force_denied"

    JOB_DEAD_LETTERED = "job.dead_lettered"


@dataclass
class AuditEvent:
    """A single audit log entry."""

    event_type: AuditEventType
    event_id: str = field(default_factory=new_id)

    run_id: str | None = None
    root_run_id: str | None = None
    session_key: str | None = None
    capability: str | None = None

    outcome: str = "success"  # success, failure, blocked
    cost: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "root_run_id": self.root_run_id,
            "session_key": self.session_key,
            "capability": self.capability,
            "outcome": self.outcome,
            "cost": self.cost,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditStorage(ABC):
    """Abstract base for audit storage backends."""

    @abstractmethod
    async def append(self, event: AuditEvent) -> None:
        """Store an audit event."""

    @abstractmethod
    async def query(
        self,
        *,
        run_id: str | None = None,
        session_key: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return events oldest first."""

    async def close(self) -> None:
        return None


class InMemoryAuditStore(AuditStorage):
    """In-memory audit storage for development and tests."""

    def __init__(self, max_events: int = 10000):
        self._events: list[AuditEvent] = []
        self._max_events = max_events

    async def append(self, event: AuditEvent) -> None:
        self._events.append(event)
        if len(self._events) > self._max_events:
            self._events = self._events[-self._max_events :]

    async def query(
        self,
        *,
        run_id: str | None = None,
        session_key: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = [
            e
            for e in self._events
            if (run_id is None or e.run_id == run_id or e.root_run_id == run_id)
            and (session_key is None or e.session_key == session_key)
        ]
        return events[:limit]

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)


class SqlAuditStore(AuditStorage):
    """Durable audit storage on the shared SQL engine."""

    def __init__(self, engine: Engine):
        self._engine = engine

    async def append(self, event: AuditEvent) -> None:
        await asyncio.to_thread(self._append_sync, event)

    def _append_sync(self, event: AuditEvent) -> None:
        with Session(self._engine) as session:
            session.add(
                AuditRecord(
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    run_id=event.run_id,
                    root_run_id=event.root_run_id,
                    session_key=event.session_key,
                    capability=event.capability,
                    outcome=event.outcome,
                    cost=event.cost,
                    details=event.details,
                    timestamp=to_db_datetime(event.timestamp),
                )
            )
            session.commit()

    async def query(
        self,
        *,
        run_id: str | None = None,
        session_key: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return await asyncio.to_thread(self._query_sync, run_id, session_key, limit)

    def _query_sync(self, run_id: str | None, session_key: str | None, limit: int) -> list[AuditEvent]:
        statement = select(AuditRecord)
        if run_id is not None:
            statement = statement.where(
                (col(AuditRecord.run_id) == run_id) | (col(AuditRecord.root_run_id) == run_id)
            )
        if session_key is not None:
            statement = statement.where(AuditRecord.session_key == session_key)
        statement = statement.order_by(col(AuditRecord.timestamp).asc()).limit(limit)

        with Session(self._engine) as session:
            rows = session.exec(statement).all()
            return [
                AuditEvent(
                    event_type=AuditEventType(row.event_type),
                    event_id=row.event_id,
                    run_id=row.run_id,
                    root_run_id=row.root_run_id,
                    session_key=row.session_key,
                    capability=row.capability,
                    outcome=row.outcome,
                    cost=row.cost,
                    details=dict(row.details or {}),
                    timestamp=from_db_datetime(row.timestamp) or utc_now(),
                )
                for row in rows
            ]

    async def purge(self, older_than: timedelta) -> int:
        cutoff = to_db_datetime(utc_now() - older_than)

        def _purge() -> int:
            with Session(self._engine) as session:
                result = session.exec(  # type: ignore[call-overload]
                    sa_delete(AuditRecord).where(col(AuditRecord.timestamp) < cutoff)
                )
                session.commit()
                return result.rowcount or 0

        return await asyncio.to_thread(_purge)
