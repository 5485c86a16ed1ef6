"""
Metrics Collection

Prometheus-compatible counters, gauges and histograms for the runtime.

Design decisions:
- Thread-safe updates (workers, API and to_thread storage calls share it)
- Label support
- One collector per OrchestratorContext, no module-level singleton
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from tasktree.core.types import utc_now


@dataclass
class MetricValue:
    """A single metric observation."""

    value: float
    timestamp: datetime = field(default_factory=utc_now)
    labels: dict[str, str] = field(default_factory=dict)


class Metric(ABC):
    """Base class for metrics."""

    kind = "untyped"

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.Lock()

    @abstractmethod
    def collect(self) -> list[MetricValue]:
        """Collect current metric values."""


class Counter(Metric):
    """Monotonic counter: jobs, calls, denials."""

    kind = "counter"

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._values: dict[tuple, float] = {}

    def inc(self, value: float = 1.0, **labels: str) -> None:
        key = tuple(sorted(labels.items()))
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def get(self, **labels: str) -> float:
        key = tuple(sorted(labels.items()))
        with self._lock:
            return self._values.get(key, 0.0)

    def total(self) -> float:
        with self._lock:
            return sum(self._values.values())

    def collect(self) -> list[MetricValue]:
        with self._lock:
            return [MetricValue(value=v, labels=dict(k)) for k, v in self._values.items()]


class Gauge(Counter):
    """Value that can go up and down: active jobs, queue depth."""

    kind = "gauge"

    def set(self, value: float, **labels: str) -> None:
        key = tuple(sorted(labels.items()))
        with self._lock:
            self._values[key] = value

    def dec(self, value: float = 1.0, **labels: str) -> None:
        self.inc(-value, **labels)


class Histogram(Metric):
    """Distribution of observations, e.g. run duration or run cost."""

    kind = "histogram"

    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, float("inf"))

    def __init__(
        self,
        name: str,
        description: str = "",
        buckets: tuple[float, ...] | None = None,
    ):
        super().__init__(name, description)
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._counts: dict[tuple, list[int]] = {}
        self._sums: dict[tuple, float] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = tuple(sorted(labels.items()))
        with self._lock:
            counts = self._counts.setdefault(key, [0] * len(self.buckets))
            self._sums[key] = self._sums.get(key, 0.0) + value
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[i] += 1
                    break

    def get_count(self, **labels: str) -> int:
        key = tuple(sorted(labels.items()))
        with self._lock:
            return sum(self._counts.get(key, []))

    def collect(self) -> list[MetricValue]:
        values = []
        with self._lock:
            for key, counts in self._counts.items():
                labels = dict(key)
                cumulative = 0
                for bound, count in zip(self.buckets, counts, strict=False):
                    cumulative += count
                    values.append(MetricValue(value=cumulative, labels={**labels, "le": str(bound)}))
                values.append(MetricValue(value=self._sums[key], labels={**labels, "type": "sum"}))
                values.append(MetricValue(value=cumulative, labels={**labels, "type": "count"}))
        return values


class Timer:
    """Context manager for timing operations into a histogram."""

    def __init__(self, histogram: Histogram, **labels: str):
        self._histogram = histogram
        self._labels = labels
        self._start = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self._histogram.observe(time.perf_counter() - self._start, **self._labels)


class MetricsCollector:
    """
    Central metrics registry for one runtime instance.

    Metrics are created on first use, so callers never get None back.
    """

    def __init__(self, prefix: str = "tasktree"):
        self._prefix = prefix
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, factory: type[Metric], description: str) -> Metric:
        full_name = f"{self._prefix}_{name}"
        with self._lock:
            metric = self._metrics.get(full_name)
            if metric is None:
                metric = factory(full_name, description)
                self._metrics[full_name] = metric
        if not isinstance(metric, factory):
            raise TypeError(f"Metric {full_name} already registered as {metric.kind}")
        return metric

    def counter(self, name: str, description: str = "") -> Counter:
        return self._get_or_create(name, Counter, description)  # type: ignore[return-value]

    def gauge(self, name: str, description: str = "") -> Gauge:
        return self._get_or_create(name, Gauge, description)  # type: ignore[return-value]

    def histogram(self, name: str, description: str = "") -> Histogram:
        return self._get_or_create(name, Histogram, description)  # type: ignore[return-value]

    def collect_all(self) -> dict[str, list[MetricValue]]:
        with self._lock:
            metrics = dict(self._metrics)
        return {name: metric.collect() for name, metric in metrics.items()}

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for name, values in self.collect_all().items():
            metric = self._metrics[name]
            lines.append(f"# HELP {name} {metric.description}")
            lines.append(f"# TYPE {name} {metric.kind}")
            for mv in values:
                label_str = ""
                if mv.labels:
                    label_str = "{" + ",".join(f'{k}="{v}"' for k, v in mv.labels.items()) + "}"
                lines.append(f"{name}{label_str} {mv.value}")
        return "\n".join(lines)
