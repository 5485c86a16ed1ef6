"""
Core Module

Contains fundamental types, exceptions and interfaces used across
all other modules in tasktree.

The interfaces module defines protocols for the pluggable backends,
preventing circular dependencies.
"""

from tasktree.core.exceptions import (
    BudgetError,
    CapabilityError,
    CapabilityNotFoundError,
    CapabilityValidationError,
    ConfigurationError,
    DelegationError,
    FatalCapabilityFailure,
    InvalidJobTransition,
    JobError,
    JobNotFoundError,
    ProviderResponseError,
    ProviderUnavailableError,
    ReasoningProviderError,
    RegistryFrozenError,
    RetryableCapabilityFailure,
    ScopeViolation,
    SessionError,
    SessionNotFoundError,
    StaleSessionError,
    TaskTreeError,
    UnknownRunError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from tasktree.core.interfaces import (
    AlertSinkProtocol,
    AuditStoreProtocol,
    CreditCheckProtocol,
    EventChannelProtocol,
    JobStoreProtocol,
    ReasoningProviderProtocol,
    SessionCacheProtocol,
    SessionRepositoryProtocol,
)
from tasktree.core.types import (
    REASON_MESSAGES,
    CancellationToken,
    CapabilityRequest,
    CostClass,
    Observation,
    ProviderResponse,
    ReasoningRequest,
    ResponseKind,
    RunState,
    TaskRun,
    TerminalResult,
    new_id,
    reason_message,
    utc_now,
)

__all__ = [
    # Types
    "REASON_MESSAGES",
    "CancellationToken",
    "CapabilityRequest",
    "CostClass",
    "Observation",
    "ProviderResponse",
    "ReasoningRequest",
    "ResponseKind",
    "RunState",
    "TaskRun",
    "TerminalResult",
    "new_id",
    "reason_message",
    "utc_now",
    # Exceptions
    "BudgetError",
    "CapabilityError",
    "CapabilityNotFoundError",
    "CapabilityValidationError",
    "ConfigurationError",
    "DelegationError",
    "FatalCapabilityFailure",
    "InvalidJobTransition",
    "JobError",
    "JobNotFoundError",
    "ProviderResponseError",
    "ProviderUnavailableError",
    "ReasoningProviderError",
    "RegistryFrozenError",
    "RetryableCapabilityFailure",
    "ScopeViolation",
    "SessionError",
    "SessionNotFoundError",
    "StaleSessionError",
    "TaskTreeError",
    "UnknownRunError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
    # Interfaces/Protocols
    "AlertSinkProtocol",
    "AuditStoreProtocol",
    "CreditCheckProtocol",
    "EventChannelProtocol",
    "JobStoreProtocol",
    "ReasoningProviderProtocol",
    "SessionCacheProtocol",
    "SessionRepositoryProtocol",
]
