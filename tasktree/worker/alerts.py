"""
Operator Alerts

Sinks for conditions a human has to look at: dead-lettered jobs and
spend anomalies.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tasktree.core.types import utc_now
from tasktree.observability.logging import get_logger

logger = get_logger("tasktree.alerts")


@dataclass
class Alert:
    kind: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


class LoggingAlertSink:
    """Writes alerts to the structured log at CRITICAL level."""

    async def alert(self, kind: str, message: str, context: dict[str, Any] | None = None) -> None:
        logger.critical(message, alert_kind=kind, **(context or {}))


class InMemoryAlertSink:
    """Collects alerts in memory, for tests and the /health view."""

    def __init__(self, max_alerts: int = 1000):
        self.alerts: list[Alert] = []
        self._max_alerts = max_alerts

    async def alert(self, kind: str, message: str, context: dict[str, Any] | None = None) -> None:
        self.alerts.append(Alert(kind=kind, message=message, context=dict(context or {})))
        if len(self.alerts) > self._max_alerts:
            self.alerts = self.alerts[-self._max_alerts :]
        logger.warning(message, alert_kind=kind)

    def of_kind(self, kind: str) -> list[Alert]:
        return [a for a in self.alerts if a.kind == kind]
