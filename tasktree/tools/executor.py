"""
Capability Executor

Validated, time-bounded execution of capabilities with error classification.

Design decisions:
- Validation before execution
- Timeout enforcement (timeouts are retryable)
- Sync functions run in a worker thread
- Errors never escape: every call yields a CapabilityOutcome
- Unclassified exceptions are classified by message heuristics
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from tasktree.core.exceptions import (
    CapabilityNotFoundError,
    FatalCapabilityFailure,
    RetryableCapabilityFailure,
)
from tasktree.observability.logging import get_logger
from tasktree.observability.metrics import MetricsCollector
from tasktree.tools.registry import CapabilityDefinition, CapabilityRegistry

logger = get_logger("tasktree.tools.executor")


RECOVERABLE_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "timeout",
    "timed out",
    "econnreset",
    "enotfound",
    "connection reset",
    "429",
    "502",
    "503",
    "temporarily unavailable",
)


def classify_error(error: BaseException) -> bool:
    """Return True if the error is worth another attempt."""
    if isinstance(error, RetryableCapabilityFailure):
        return True
    if isinstance(error, FatalCapabilityFailure):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RECOVERABLE_PATTERNS)


@dataclass
class CapabilityResult:
    """
    Explicit return value for capabilities that know their actual cost.

    Capabilities returning anything else are charged their estimate.
    """

    result: Any = None
    cost: float = 0.0
    side_effects: list[str] = field(default_factory=list)


@dataclass
class CapabilityOutcome:
    """Result of one execution attempt."""

    name: str
    call_id: str = ""
    result: Any = None
    cost: float = 0.0
    side_effects: list[str] = field(default_factory=list)
    error: str | None = None
    retryable: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class CapabilityValidator:
    """Validates capability arguments against the JSON Schema."""

    _TYPE_MAP: dict[str, type | tuple[type, ...]] = {
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "array": list,
        "object": dict,
        "null": type(None),
    }

    def validate(
        self,
        definition: CapabilityDefinition,
        arguments: dict[str, Any],
    ) -> tuple[bool, list[str]]:
        """Returns (is_valid, error_messages)."""
        errors = []
        schema = definition.parameters

        for name in schema.get("required", []):
            if name not in arguments:
                errors.append(f"Missing required field: {name}")

        properties = schema.get("properties", {})
        for name, value in arguments.items():
            if name not in properties:
                continue

            field_schema = properties[name]
            expected_type = field_schema.get("type")

            if expected_type and not self._check_type(value, expected_type):
                errors.append(
                    f"Field '{name}' expected type {expected_type}, got {type(value).__name__}"
                )
                continue

            if "enum" in field_schema and value not in field_schema["enum"]:
                errors.append(f"Field '{name}' must be one of {field_schema['enum']}")

            if isinstance(value, (int, float)) and not isinstance(value, bool):
                if "minimum" in field_schema and value < field_schema["minimum"]:
                    errors.append(f"Field '{name}' must be >= {field_schema['minimum']}")
                if "maximum" in field_schema and value > field_schema["maximum"]:
                    errors.append(f"Field '{name}' must be <= {field_schema['maximum']}")

        return len(errors) == 0, errors

    def _check_type(self, value: Any, expected: str) -> bool:
        expected_types = self._TYPE_MAP.get(expected)
        if expected_types is None:
            return True
        if expected in ("integer", "number") and isinstance(value, bool):
            return False
        return isinstance(value, expected_types)


class CapabilityExecutor:
    """
    Standard capability executor.

    Provides:
    - Registry-based lookup
    - Argument validation
    - Timeout enforcement
    - Retryable/fatal classification
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        validator: CapabilityValidator | None = None,
        metrics: MetricsCollector | None = None,
        default_timeout: float = 30.0,
    ):
        self._registry = registry
        self._validator = validator or CapabilityValidator()
        self._metrics = metrics
        self._default_timeout = default_timeout

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    def resolve(self, name: str) -> CapabilityDefinition:
        definition = self._registry.get(name)
        if definition is None:
            raise CapabilityNotFoundError(f"Capability not found: {name}", context={"capability": name})
        return definition

    async def execute(
        self,
        definition: CapabilityDefinition,
        arguments: dict[str, Any],
        *,
        context: Any = None,
        call_id: str = "",
    ) -> CapabilityOutcome:
        """Execute a capability; never raises for capability-level failures."""
        start_time = time.perf_counter()
        name = definition.name

        is_valid, errors = self._validator.validate(definition, arguments)
        if not is_valid:
            self._record(name, "invalid")
            return CapabilityOutcome(
                name=name,
                call_id=call_id,
                error=f"Validation failed: {', '.join(errors)}",
                retryable=True,
            )

        kwargs = dict(arguments)
        if definition.accepts_context:
            kwargs["context"] = context

        timeout = definition.timeout_seconds or self._default_timeout

        try:
            if definition.is_async:
                value = await asyncio.wait_for(definition.function(**kwargs), timeout=timeout)
            else:
                value = await asyncio.wait_for(
                    asyncio.to_thread(definition.function, **kwargs),
                    timeout=timeout,
                )
        except TimeoutError:
            self._record(name, "timeout")
            return CapabilityOutcome(
                name=name,
                call_id=call_id,
                error=f"Capability timed out after {timeout}s",
                retryable=True,
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retryable = classify_error(e)
            self._record(name, "retryable" if retryable else "fatal")
            logger.warning(
                "Capability failed",
                capability=name,
                retryable=retryable,
                error_type=type(e).__name__,
            )
            return CapabilityOutcome(
                name=name,
                call_id=call_id,
                error=f"{type(e).__name__}: {e}",
                retryable=retryable,
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )

        duration_ms = (time.perf_counter() - start_time) * 1000
        self._record(name, "success")

        if isinstance(value, CapabilityResult):
            return CapabilityOutcome(
                name=name,
                call_id=call_id,
                result=value.result,
                cost=max(0.0, value.cost),
                side_effects=list(value.side_effects),
                duration_ms=duration_ms,
            )

        return CapabilityOutcome(
            name=name,
            call_id=call_id,
            result=value,
            cost=definition.estimate,
            duration_ms=duration_ms,
        )

    def _record(self, name: str, status: str) -> None:
        if self._metrics:
            self._metrics.counter("capability_calls_total", "Capability calls by outcome").inc(
                capability=name, status=status
            )
