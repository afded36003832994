"""
In-process metrics for FlowTrack.

Every metric the service emits is named in `MetricName` together with its
kind and a one-line description. The registry pre-registers the catalog, so
`GET /v1/metrics` reports zeros for things that have not happened yet instead
of omitting them. Dynamic per-type series (`events.appended.<type>`,
`circuit.<name>.<state>`) are built with `labelled()`.
"""

from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Union


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class MetricName(str, Enum):
    """Catalog of FlowTrack metrics."""

    # Primary store
    DB_QUERY_COUNT = "db.query.count"
    DB_QUERY_DURATION_MS = "db.query.duration_ms"

    # Event store and task lifecycle
    EVENTS_APPENDED = "events.appended"
    TASKS_CREATED = "tasks.created"
    TASKS_COMPLETED = "tasks.completed"

    # Analytics
    ANALYTICS_EVENTS_SKIPPED = "analytics.events.skipped"
    ANALYTICS_DURATION_CLAMPED = "analytics.duration.clamped"

    # Index mirror
    MIRROR_ENQUEUED = "index.mirror.enqueued"
    MIRROR_SKIPPED = "index.mirror.skipped"
    MIRROR_SUCCEEDED = "index.mirror.succeeded"
    MIRROR_ATTEMPT_FAILED = "index.mirror.attempt_failed"
    MIRROR_DEAD_LETTER = "index.mirror.dead_letter"
    MIRROR_PENDING = "index.mirror.pending"

    # Index requests
    INDEX_REQUEST_FAILED = "index.request.failed"
    INDEX_REQUEST_REJECTED = "index.request.rejected"
    INDEX_REQUEST_DURATION_MS = "index.request.duration_ms"
    SEARCH_TASKS_DEGRADED = "search.tasks.degraded"

    @property
    def kind(self) -> MetricKind:
        return _CATALOG[self][0]

    @property
    def description(self) -> str:
        return _CATALOG[self][1]


_CATALOG: dict[MetricName, tuple[MetricKind, str]] = {
    MetricName.DB_QUERY_COUNT: (MetricKind.COUNTER, "SQL statements executed"),
    MetricName.DB_QUERY_DURATION_MS: (MetricKind.HISTOGRAM, "SQL statement latency"),
    MetricName.EVENTS_APPENDED: (MetricKind.COUNTER, "Events written to the event store"),
    MetricName.TASKS_CREATED: (MetricKind.COUNTER, "Tasks created"),
    MetricName.TASKS_COMPLETED: (MetricKind.COUNTER, "Tasks completed"),
    MetricName.ANALYTICS_EVENTS_SKIPPED: (
        MetricKind.COUNTER,
        "Events that could not contribute a stage duration",
    ),
    MetricName.ANALYTICS_DURATION_CLAMPED: (
        MetricKind.COUNTER,
        "Negative stage durations clamped to zero",
    ),
    MetricName.MIRROR_ENQUEUED: (MetricKind.COUNTER, "Mirror operations queued"),
    MetricName.MIRROR_SKIPPED: (MetricKind.COUNTER, "Mirror calls skipped, index unavailable"),
    MetricName.MIRROR_SUCCEEDED: (MetricKind.COUNTER, "Mirror operations applied"),
    MetricName.MIRROR_ATTEMPT_FAILED: (MetricKind.COUNTER, "Failed mirror attempts, retries included"),
    MetricName.MIRROR_DEAD_LETTER: (MetricKind.COUNTER, "Mirror operations abandoned"),
    MetricName.MIRROR_PENDING: (MetricKind.GAUGE, "Mirror operations waiting in the queue"),
    MetricName.INDEX_REQUEST_FAILED: (MetricKind.COUNTER, "Index requests that failed to complete"),
    MetricName.INDEX_REQUEST_REJECTED: (
        MetricKind.COUNTER,
        "Index requests refused by the breaker or answered with a 4xx",
    ),
    MetricName.INDEX_REQUEST_DURATION_MS: (MetricKind.HISTOGRAM, "Index request latency"),
    MetricName.SEARCH_TASKS_DEGRADED: (
        MetricKind.COUNTER,
        "Task searches served from the primary store",
    ),
}

Name = Union[MetricName, str]


def labelled(name: MetricName, label: str) -> str:
    """Series name for one label value, e.g. events.appended.task_created."""
    return f"{name.value}.{label}"


def _key(name: Name) -> str:
    return name.value if isinstance(name, MetricName) else name


@dataclass
class Counter:
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount


@dataclass
class Gauge:
    value: float = 0.0

    def set(self, value: float) -> None:
        self.value = value


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def snapshot(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "total": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count if self.count else 0.0,
        }


class MetricsRegistry:
    """Thread-safe registry for counters, gauges, and histograms."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.counters: dict[str, Counter] = {}
        self.gauges: dict[str, Gauge] = {}
        self.histograms: dict[str, Histogram] = {}
        self._register_catalog()

    def _register_catalog(self) -> None:
        for name in MetricName:
            if name.kind == MetricKind.COUNTER:
                self.counters[name.value] = Counter()
            elif name.kind == MetricKind.GAUGE:
                self.gauges[name.value] = Gauge()
            else:
                self.histograms[name.value] = Histogram()

    @staticmethod
    def _check_kind(name: Name, kind: MetricKind) -> None:
        if isinstance(name, MetricName) and name.kind != kind:
            raise ValueError(f"{name.value} is a {name.kind.value}, not a {kind.value}")

    def inc_counter(self, name: Name, amount: float = 1.0) -> None:
        self._check_kind(name, MetricKind.COUNTER)
        with self._lock:
            self.counters.setdefault(_key(name), Counter()).inc(amount)

    def set_gauge(self, name: Name, value: float) -> None:
        self._check_kind(name, MetricKind.GAUGE)
        with self._lock:
            self.gauges.setdefault(_key(name), Gauge()).set(value)

    def observe(self, name: Name, value: float) -> None:
        self._check_kind(name, MetricKind.HISTOGRAM)
        with self._lock:
            self.histograms.setdefault(_key(name), Histogram()).observe(value)

    def counter_value(self, name: Name) -> float:
        """Current value of a counter (0 if never incremented)."""
        with self._lock:
            counter = self.counters.get(_key(name))
            return counter.value if counter else 0.0

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": {name: c.value for name, c in self.counters.items()},
                "gauges": {name: g.value for name, g in self.gauges.items()},
                "histograms": {name: h.snapshot() for name, h in self.histograms.items()},
                "descriptions": {name.value: name.description for name in MetricName},
            }

    def reset(self) -> None:
        """Drop every recorded value; catalog metrics go back to zero."""
        with self._lock:
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()
            self._register_catalog()


metrics = MetricsRegistry()
