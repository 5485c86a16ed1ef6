"""
Session Store

Resumable identity of a top-level workflow instance, kept in two tiers.

Design decisions:
- The durable tier is authoritative; the cache tier is an expiring copy
- Reads go cache first, then durable, repopulating the cache
- Writes go durable first (optimistic version check), then cache
- A cache failure is logged and never fails the operation
- session_id is issued once and never changes, even across restarts
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session as DbSession
from sqlmodel import col

from tasktree.core.exceptions import SessionNotFoundError, StaleSessionError
from tasktree.core.interfaces import SessionCacheProtocol, SessionRepositoryProtocol
from tasktree.core.types import utc_now
from tasktree.observability.logging import get_logger
from tasktree.storage.database import from_db_datetime, to_db_datetime
from tasktree.storage.models import SessionRecord

logger = get_logger("tasktree.memory.session")


class Session(BaseModel):
    """
    Persisted state of one workflow instance.

    `version` is 0 until the first durable write and increases by one
    on every write after that.
    """

    session_id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_key: str
    conversation_handle: str | None = None
    last_step: str | None = None
    cumulative_spend: float = 0.0
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    def record_run(self, *, step: str, handle: str | None, spend: float) -> "Session":
        """State after a run for `step` reached a terminal state."""
        return self.model_copy(
            update={
                "conversation_handle": handle or self.conversation_handle,
                "last_step": step,
                "cumulative_spend": self.cumulative_spend + max(0.0, spend),
                "updated_at": utc_now(),
            }
        )

    def cleared(self) -> "Session":
        """State after the operator restarted the workflow."""
        return self.model_copy(
            update={
                "conversation_handle": None,
                "last_step": None,
                "updated_at": utc_now(),
            }
        )


# =============================================================================
# Cache tier
# =============================================================================


class RedisSessionCache:
    """
    Redis-based session cache.

    Sessions are stored as JSON with SET ... EX.
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "tasktree:session:",
        default_ttl_seconds: int = 86400,
    ):
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._default_ttl = default_ttl_seconds
        self._client = None

    async def _get_client(self):
        """Lazy initialization of Redis client."""
        if self._client is None:
            import redis.asyncio as redis

            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _make_key(self, workflow_key: str) -> str:
        return f"{self._key_prefix}{workflow_key}"

    async def get(self, key: str) -> Session | None:
        client = await self._get_client()
        data = await client.get(self._make_key(key))
        if data is None:
            return None
        return Session.model_validate_json(data)

    async def set(self, session: Session, ttl_seconds: int | None = None) -> None:
        client = await self._get_client()
        await client.set(
            self._make_key(session.workflow_key),
            session.model_dump_json(),
            ex=ttl_seconds or self._default_ttl,
        )

    async def delete(self, key: str) -> bool:
        client = await self._get_client()
        return await client.delete(self._make_key(key)) > 0

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class InMemorySessionCache:
    """In-memory session cache with TTL, for development and tests."""

    def __init__(
        self,
        default_ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: dict[str, tuple[Session, float]] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    async def get(self, key: str) -> Session | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        session, expires = entry
        if self._clock() > expires:
            del self._entries[key]
            return None
        return session.model_copy()

    async def set(self, session: Session, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds or self._default_ttl
        self._entries[session.workflow_key] = (session.model_copy(), self._clock() + ttl)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def close(self) -> None:
        self._entries.clear()


# =============================================================================
# Durable tier
# =============================================================================


class InMemorySessionRepository:
    """Process-local durable tier for tests and single-process development."""

    def __init__(self) -> None:
        self._rows: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Session | None:
        row = self._rows.get(key)
        return row.model_copy() if row else None

    async def save(self, session: Session, expected_version: int | None) -> Session:
        async with self._lock:
            current = self._rows.get(session.workflow_key)
            if not expected_version:
                if current is not None:
                    raise StaleSessionError(
                        f"Session already exists: {session.workflow_key}",
                        context={"workflow_key": session.workflow_key},
                    )
            elif current is None or current.version != expected_version:
                raise StaleSessionError(
                    f"Session changed concurrently: {session.workflow_key}",
                    context={"workflow_key": session.workflow_key, "expected": expected_version},
                )
            elif current.session_id != session.session_id:
                raise StaleSessionError(
                    "session_id cannot change",
                    context={"workflow_key": session.workflow_key},
                )

            saved = session.model_copy(
                update={"version": (expected_version or 0) + 1, "updated_at": utc_now()}
            )
            self._rows[session.workflow_key] = saved
            return saved.model_copy()

    async def close(self) -> None:
        return None


class SqlSessionRepository:
    """
    Durable tier on SQLModel/SQLAlchemy.

    Updates are conditional on the stored version; a concurrent writer
    makes the UPDATE match zero rows and raises StaleSessionError.
    """

    def __init__(self, engine: Engine):
        self._engine = engine

    async def get(self, key: str) -> Session | None:
        return await asyncio.to_thread(self._get_sync, key)

    def _get_sync(self, key: str) -> Session | None:
        with DbSession(self._engine) as db:
            row = db.get(SessionRecord, key)
            if row is None:
                return None
            return Session(
                session_id=row.session_id,
                workflow_key=row.workflow_key,
                conversation_handle=row.conversation_handle,
                last_step=row.last_step,
                cumulative_spend=row.cumulative_spend,
                updated_at=from_db_datetime(row.updated_at) or utc_now(),
                version=row.version,
            )

    async def save(self, session: Session, expected_version: int | None) -> Session:
        return await asyncio.to_thread(self._save_sync, session, expected_version)

    def _save_sync(self, session: Session, expected_version: int | None) -> Session:
        now = utc_now()
        new_version = (expected_version or 0) + 1

        with DbSession(self._engine) as db:
            if not expected_version:
                db.add(
                    SessionRecord(
                        workflow_key=session.workflow_key,
                        session_id=session.session_id,
                        conversation_handle=session.conversation_handle,
                        last_step=session.last_step,
                        cumulative_spend=session.cumulative_spend,
                        version=new_version,
                        updated_at=to_db_datetime(now),
                    )
                )
                try:
                    db.commit()
                except IntegrityError as e:
                    db.rollback()
                    raise StaleSessionError(
                        f"Session already exists: {session.workflow_key}",
                        context={"workflow_key": session.workflow_key},
                        cause=e,
                    ) from e
            else:
                result = db.exec(  # type: ignore[call-overload]
                    sa_update(SessionRecord)
                    .where(col(SessionRecord.workflow_key) == session.workflow_key)
                    .where(col(SessionRecord.version) == expected_version)
                    .where(col(SessionRecord.session_id) == session.session_id)
                    .values(
                        conversation_handle=session.conversation_handle,
                        last_step=session.last_step,
                        cumulative_spend=session.cumulative_spend,
                        version=new_version,
                        updated_at=to_db_datetime(now),
                    )
                )
                if result.rowcount != 1:
                    db.rollback()
                    raise StaleSessionError(
                        f"Session changed concurrently: {session.workflow_key}",
                        context={"workflow_key": session.workflow_key, "expected": expected_version},
                    )
                db.commit()

        return session.model_copy(update={"version": new_version, "updated_at": now})

    async def close(self) -> None:
        return None


# =============================================================================
# Two-tier store
# =============================================================================


class SessionStore:
    """
    Read-through / write-through session store.

    Usage:
        store = SessionStore(InMemorySessionCache(), InMemorySessionRepository())
        session = await store.get_or_create("brand-123")
        session = await store.save(session.record_run(step="a", handle="h", spend=0.4))
    """

    def __init__(
        self,
        cache: SessionCacheProtocol,
        durable: SessionRepositoryProtocol,
        ttl_seconds: int = 86400,
    ):
        self._cache = cache
        self._durable = durable
        self._ttl = ttl_seconds

    @property
    def durable(self) -> SessionRepositoryProtocol:
        return self._durable

    async def load(self, key: str) -> Session:
        """
        Raises:
            SessionNotFoundError: If no tier holds the session
        """
        cached = await self._cache_get(key)
        if cached is not None:
            return cached

        session = await self._durable.get(key)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {key}", context={"workflow_key": key})

        await self._cache_set(session)
        return session

    async def find(self, key: str) -> Session | None:
        try:
            return await self.load(key)
        except SessionNotFoundError:
            return None

    async def get_or_create(self, key: str) -> Session:
        """Existing session, or a new unsaved one with a fresh session_id."""
        return await self.find(key) or Session(workflow_key=key)

    async def save(self, session: Session) -> Session:
        """
        Persist durably, then refresh the cache.

        Raises:
            StaleSessionError: If another writer saved first
        """
        saved = await self._durable.save(session, session.version or None)
        await self._cache_set(saved)
        return saved

    async def update(self, key: str, mutate: Callable[[Session], Session]) -> Session:
        """
        Apply `mutate` to the current session and save it.

        A stale cached copy is dropped and the write retried once against
        the durable tier.
        """
        session = await self.get_or_create(key)
        try:
            return await self.save(mutate(session))
        except StaleSessionError:
            logger.warning("Stale session write; retrying from durable tier", workflow_key=key)
            await self._cache_delete(key)
            current = await self._durable.get(key) or Session(workflow_key=key)
            return await self.save(mutate(current))

    async def clear(self, key: str) -> Session | None:
        """Invalidate the conversation handle and reset progress."""
        session = await self.find(key)
        if session is None:
            return None
        logger.info("Clearing session", workflow_key=key)
        return await self.update(key, lambda s: s.cleared())

    async def close(self) -> None:
        await self._cache.close()
        await self._durable.close()

    # Cache failures are logged and otherwise ignored.

    async def _cache_get(self, key: str) -> Session | None:
        try:
            return await self._cache.get(key)
        except Exception as e:
            logger.warning("Session cache read failed", workflow_key=key, error_type=type(e).__name__)
            return None

    async def _cache_set(self, session: Session) -> None:
        try:
            await self._cache.set(session, self._ttl)
        except Exception as e:
            logger.warning(
                "Session cache write failed",
                workflow_key=session.workflow_key,
                error_type=type(e).__name__,
            )

    async def _cache_delete(self, key: str) -> None:
        try:
            await self._cache.delete(key)
        except Exception as e:
            logger.warning("Session cache delete failed", workflow_key=key, error_type=type(e).__name__)
