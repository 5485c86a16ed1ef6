"""
Exception Hierarchy

Defines all exceptions used in tasktree.
Exceptions are organized by domain and include context for debugging.

Design decisions:
- All exceptions inherit from TaskTreeError for easy catching
- Exceptions carry structured context, not just messages
- Error codes enable programmatic handling
- Budget, turn and time exhaustion are run states, not exceptions
"""

from typing import Any


class TaskTreeError(Exception):
    """
    Base exception for all tasktree errors.

    Provides structured error information including:
    - Human-readable message
    - Machine-readable error code
    - Additional context for debugging
    """

    error_code: str = "TASKTREE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.error_code
        self.context = context or {}
        self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "context": self.context,
        }


# ============================================================
# Configuration Errors
# ============================================================

class ConfigurationError(TaskTreeError):
    """Error in configuration or settings."""

    error_code = "CONFIGURATION_ERROR"


class WorkflowNotFoundError(ConfigurationError):
    """No workflow profile registered under the requested name."""

    error_code = "WORKFLOW_NOT_FOUND"


class WorkflowValidationError(ConfigurationError):
    """A workflow profile failed validation at load time."""

    error_code = "WORKFLOW_VALIDATION_ERROR"


# ============================================================
# Capability Errors
# ============================================================

class CapabilityError(TaskTreeError):
    """Base error for capability-related issues."""

    error_code = "CAPABILITY_ERROR"


class CapabilityNotFoundError(CapabilityError):
    """Requested capability is not registered."""

    error_code = "CAPABILITY_NOT_FOUND"


class CapabilityValidationError(CapabilityError):
    """Capability arguments failed schema validation."""

    error_code = "CAPABILITY_VALIDATION_ERROR"


class ScopeViolation(CapabilityError):
    """A run requested a capability outside its scope."""

    error_code = "SCOPE_VIOLATION"

    def __init__(self, message: str, *, capability: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.capability = capability


class RegistryFrozenError(CapabilityError):
    """Registration attempted after start-up."""

    error_code = "REGISTRY_FROZEN"


class RetryableCapabilityFailure(CapabilityError):
    """Transient capability failure. The provider may try again."""

    error_code = "CAPABILITY_RETRYABLE"


class FatalCapabilityFailure(CapabilityError):
    """Non-recoverable capability failure. Ends the run."""

    error_code = "CAPABILITY_FATAL"


class DelegationError(CapabilityError):
    """A child task could not be spawned."""

    error_code = "DELEGATION_ERROR"


# ============================================================
# Reasoning Provider Errors
# ============================================================

class ReasoningProviderError(TaskTreeError):
    """Base error for reasoning provider issues."""

    error_code = "PROVIDER_ERROR"


class ProviderUnavailableError(ReasoningProviderError):
    """Provider unreachable, rate limited or overloaded."""

    error_code = "PROVIDER_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderResponseError(ReasoningProviderError):
    """Invalid or unexpected response from the provider."""

    error_code = "PROVIDER_RESPONSE_ERROR"


# ============================================================
# Budget Errors
# ============================================================

class BudgetError(TaskTreeError):
    """Base error for budget accounting issues."""

    error_code = "BUDGET_ERROR"


class UnknownRunError(BudgetError):
    """Run is not registered with the governor."""

    error_code = "UNKNOWN_RUN"


# ============================================================
# Session Errors
# ============================================================

class SessionError(TaskTreeError):
    """Base error for session storage issues."""

    error_code = "SESSION_ERROR"


class SessionNotFoundError(SessionError):
    """Session does not exist."""

    error_code = "SESSION_NOT_FOUND"


class StaleSessionError(SessionError):
    """Optimistic write lost against a concurrent update."""

    error_code = "SESSION_STALE"


# ============================================================
# Job Errors
# ============================================================

class JobError(TaskTreeError):
    """Base error for job queue issues."""

    error_code = "JOB_ERROR"


class JobNotFoundError(JobError):
    """Job does not exist (or was purged)."""

    error_code = "JOB_NOT_FOUND"


class InvalidJobTransition(JobError):
    """Status change not permitted from the job's current status."""

    error_code = "INVALID_JOB_TRANSITION"
