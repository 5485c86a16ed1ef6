"""
Observability Module

Structured logging, metrics, the audit trail and the progress event channel.
"""

from tasktree.observability.audit import (
    AuditEvent,
    AuditEventType,
    AuditStorage,
    InMemoryAuditStore,
    SqlAuditStore,
)
from tasktree.observability.events import (
    InMemoryEventChannel,
    ProgressEvent,
    ProgressEventKind,
    RedisEventChannel,
    format_sse,
    sanitize_result,
)
from tasktree.observability.logging import (
    BufferHandler,
    ConsoleHandler,
    LogLevel,
    StructuredLogger,
    configure_logging,
    get_logger,
)
from tasktree.observability.metrics import Counter, Gauge, Histogram, MetricsCollector, Timer

__all__ = [
    # Audit
    "AuditEvent",
    "AuditEventType",
    "AuditStorage",
    "InMemoryAuditStore",
    "SqlAuditStore",
    # Events
    "InMemoryEventChannel",
    "ProgressEvent",
    "ProgressEventKind",
    "RedisEventChannel",
    "format_sse",
    "sanitize_result",
    # Logging
    "BufferHandler",
    "ConsoleHandler",
    "LogLevel",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    # Metrics
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsCollector",
    "Timer",
]
