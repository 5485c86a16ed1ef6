"""
Core Interfaces and Protocols

Defines the contracts between the runtime and its external collaborators.
All cross-module interactions with pluggable backends use these interfaces.

Design decisions:
- Protocol-based for structural subtyping
- Minimal interface surface
- No implementation details leak through
"""

from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol, runtime_checkable

from tasktree.core.types import ProviderResponse, ReasoningRequest

if TYPE_CHECKING:
    from tasktree.memory.session import Session
    from tasktree.observability.audit import AuditEvent
    from tasktree.observability.events import ProgressEvent
    from tasktree.worker.jobs import Job, JobStatus


# =============================================================================
# REASONING PROVIDER PROTOCOL
# =============================================================================

@runtime_checkable
class ReasoningProviderProtocol(Protocol):
    """
    Interface for the external reasoning backend.

    Implemented by: ScriptedReasoningProvider, HttpReasoningProvider
    Used by: ReasoningEngine
    """

    @property
    def provider_name(self) -> str:
        ...

    async def submit(self, request: ReasoningRequest) -> ProviderResponse:
        """Submit one turn and return the provider's decision."""
        ...


# =============================================================================
# BUDGET COLLABORATORS
# =============================================================================

@runtime_checkable
class CreditCheckProtocol(Protocol):
    """
    External credit balance check.

    Implemented by: CreditLedger
    Used by: BudgetGovernor (fails closed on error)
    """

    async def has_credits(self, account: str, operation: str, quantity: int = 1) -> bool:
        ...


# =============================================================================
# SESSION STORAGE PROTOCOLS
# =============================================================================

@runtime_checkable
class SessionCacheProtocol(Protocol):
    """Fast, expiring session tier."""

    async def get(self, key: str) -> "Session | None":
        ...

    async def set(self, session: "Session", ttl_seconds: int | None = None) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class SessionRepositoryProtocol(Protocol):
    """Authoritative session tier."""

    async def get(self, key: str) -> "Session | None":
        ...

    async def save(self, session: "Session", expected_version: int | None) -> "Session":
        """Persist if the stored version still equals expected_version."""
        ...

    async def close(self) -> None:
        ...


# =============================================================================
# JOB / EVENT / ALERT PROTOCOLS
# =============================================================================

@runtime_checkable
class JobStoreProtocol(Protocol):
    """Durable job queue storage."""

    async def create_or_get_active(self, job: "Job") -> tuple["Job", bool]:
        ...

    async def get(self, job_id: str) -> "Job | None":
        ...

    async def claim_next(self, worker_id: str) -> "Job | None":
        ...

    async def update(self, job: "Job") -> "Job":
        ...

    async def request_cancel(self, job_id: str) -> "Job | None":
        """Fail a queued job outright, or flag an active one for cancellation."""
        ...

    async def set_progress(self, job_id: str, percent: int) -> None:
        """Raise the stored progress of an active job; never lowers it."""
        ...

    async def list_by_status(self, status: "JobStatus") -> list["Job"]:
        ...

    async def purge(self, status: "JobStatus", older_than_seconds: float) -> int:
        ...


@runtime_checkable
class EventChannelProtocol(Protocol):
    """
    Ordered progress channel keyed by session.

    Implemented by: InMemoryEventChannel, RedisEventChannel
    """

    async def publish(self, event: "ProgressEvent") -> None:
        ...

    def subscribe(
        self,
        session_key: str,
        *,
        replay: bool = False,
        until_terminal: bool = True,
    ) -> AsyncIterator["ProgressEvent"]:
        ...


@runtime_checkable
class AlertSinkProtocol(Protocol):
    """Operator alerting (dead letters, anomalies)."""

    async def alert(self, kind: str, message: str, context: dict[str, Any] | None = None) -> None:
        ...


@runtime_checkable
class AuditStoreProtocol(Protocol):
    """Append-only audit trail."""

    async def append(self, event: "AuditEvent") -> None:
        ...

    async def query(
        self,
        *,
        run_id: str | None = None,
        session_key: str | None = None,
        limit: int = 100,
    ) -> list["AuditEvent"]:
        ...
