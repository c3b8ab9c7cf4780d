"""
Load Engine — Metric Sink.

Every observation the engine makes (a request phase timing, a failed
iteration, a custom business counter) arrives here as an immutable
:class:`Sample` and is folded into one of four metric kinds:

- **Counter** — monotonic sum (``http_reqs``, ``iterations``)
- **Gauge** — most recent value, plus the min/max it has taken (``vus``)
- **Rate** — fraction of observations that were truthy (``http_req_failed``)
- **Trend** — a distribution; keeps every value so that any percentile
  can be asked for at the end (``http_req_duration``)

The sink is the only state mutated by many virtual users at once.  Each
metric carries its own lock, and the sink-wide lock is taken only the
first time a metric name is seen, so writers on different metrics never
contend.

Key Concepts Demonstrated:
- Per-metric locking instead of one global write lock
- Deferred sorting: trends append in O(1) and sort only at query time
- Tag-filtered sub-metrics (``http_req_duration{status:200}``)
"""

from __future__ import annotations

import math
import re
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from load_engine.errors import ConfigurationError, MetricKindError

METRIC_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,127}$")
SELECTOR_RE = re.compile(r"^(?P<name>[^{}\s]+)\s*(?:\{(?P<tags>[^{}]*)\})?$")

DEFAULT_TREND_STATS = ("avg", "min", "med", "max", "p(90)", "p(95)")

_PERCENTILE_RE = re.compile(r"^p\(\s*(?P<p>\d+(?:\.\d+)?)\s*\)$")


class MetricKind(str, Enum):
    """The four metric kinds the sink understands."""

    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


@dataclass(frozen=True)
class Sample:
    """One immutable observation of a metric."""

    metric: str
    value: float
    timestamp: float
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


def freeze_tags(tags: Mapping[str, Any] | None) -> Mapping[str, str]:
    """Return a read-only copy of *tags* with every value stringified."""
    if not tags:
        return MappingProxyType({})
    return MappingProxyType({str(key): _tag_value(value) for key, value in tags.items()})


def _tag_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_metric_selector(selector: str) -> tuple[str, dict[str, str]]:
    """
    Split ``"name{tag:value,...}"`` into the metric name and tag filter.

    Args:
        selector: A bare metric name or a name followed by a brace-wrapped,
            comma-separated list of ``tag:value`` pairs.

    Returns:
        ``(name, tags)`` where *tags* is empty for a bare name.

    Raises:
        ConfigurationError: If the selector or the metric name is malformed.
    """
    match = SELECTOR_RE.match(selector.strip())
    if match is None:
        raise ConfigurationError(f"Malformed metric selector: {selector!r}")

    name = match.group("name")
    validate_metric_name(name)

    tags: dict[str, str] = {}
    raw_tags = match.group("tags")
    if raw_tags is None:
        return name, tags

    for pair in raw_tags.split(","):
        if not pair.strip():
            continue
        key, sep, value = pair.partition(":")
        if not sep or not key.strip():
            raise ConfigurationError(f"Malformed tag filter {pair!r} in {selector!r}")
        tags[key.strip()] = value.strip()
    if not tags:
        raise ConfigurationError(f"Empty tag filter in {selector!r}")
    return name, tags


def validate_metric_name(name: str) -> None:
    """Raise :class:`ConfigurationError` if *name* is not a legal metric name."""
    if not isinstance(name, str) or not METRIC_NAME_RE.match(name):
        raise ConfigurationError(f"Invalid metric name: {name!r}")


def percentile(sorted_values: list[float], p: float) -> float:
    """
    Nearest-rank percentile over already-sorted values.

    The rank for percentile *p* over *n* values is ``ceil(p/100 * n) - 1``
    (0-indexed), clamped to the valid index range.

    Raises:
        ValueError: If *sorted_values* is empty or *p* is outside 0–100.
    """
    if not sorted_values:
        raise ValueError("percentile of an empty series")
    if not 0 <= p <= 100:
        raise ValueError(f"percentile out of range: {p}")

    n = len(sorted_values)
    rank = math.ceil(p / 100 * n) - 1
    rank = min(max(rank, 0), n - 1)
    return sorted_values[rank]


# =====================================================================
# Metric kinds
# =====================================================================


class Metric:
    """
    Base class for a named metric with its own write lock.

    Sub-metrics are plain metrics of the same kind with a tag filter; the
    parent forwards every matching sample to them after updating itself.
    """

    kind: MetricKind

    def __init__(self, name: str, *, is_time: bool = False, tag_filter: Mapping[str, str] | None = None):
        self.name = name
        self.is_time = is_time
        self.tag_filter = dict(tag_filter or {})
        self.count = 0
        self._lock = threading.Lock()
        self._submetrics: tuple[Metric, ...] = ()

    @property
    def empty(self) -> bool:
        return self.count == 0

    def add(self, value: float, tags: Mapping[str, str]) -> None:
        with self._lock:
            self._observe(float(value))
            self.count += 1
        for submetric in self._submetrics:
            if submetric.matches(tags):
                submetric.add(value, tags)

    def matches(self, tags: Mapping[str, str]) -> bool:
        return all(tags.get(key) == value for key, value in self.tag_filter.items())

    def attach(self, submetric: Metric) -> None:
        with self._lock:
            self._submetrics = self._submetrics + (submetric,)

    def _observe(self, value: float) -> None:
        raise NotImplementedError

    def aggregate(self, aggregation: str, elapsed: float) -> float:
        """
        Return a single aggregate value by name (``"avg"``, ``"p(95)"``...).

        Raises:
            KeyError: If the aggregation does not apply to this metric kind.
            ValueError: If the metric has no samples yet.
        """
        raise NotImplementedError

    def snapshot(self, elapsed: float, trend_stats: tuple[str, ...] = DEFAULT_TREND_STATS) -> dict[str, float]:
        raise NotImplementedError


class CounterMetric(Metric):
    kind = MetricKind.COUNTER

    def __init__(self, name: str, **kwargs: Any):
        super().__init__(name, **kwargs)
        self.total = 0.0

    def _observe(self, value: float) -> None:
        if value < 0:
            raise ValueError(f"Counter {self.name} cannot be decremented")
        self.total += value

    def aggregate(self, aggregation: str, elapsed: float) -> float:
        with self._lock:
            total = self.total
        if aggregation == "count":
            return total
        if aggregation == "rate":
            return total / elapsed if elapsed > 0 else 0.0
        raise KeyError(aggregation)

    def snapshot(self, elapsed: float, trend_stats: tuple[str, ...] = DEFAULT_TREND_STATS) -> dict[str, float]:
        return {"count": self.aggregate("count", elapsed), "rate": self.aggregate("rate", elapsed)}


class GaugeMetric(Metric):
    kind = MetricKind.GAUGE

    def __init__(self, name: str, **kwargs: Any):
        super().__init__(name, **kwargs)
        self.value = 0.0
        self.min = math.inf
        self.max = -math.inf

    def _observe(self, value: float) -> None:
        self.value = value
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def aggregate(self, aggregation: str, elapsed: float) -> float:
        if aggregation not in ("value", "min", "max"):
            raise KeyError(aggregation)
        with self._lock:
            if self.count == 0:
                raise ValueError(f"Gauge {self.name} has no samples")
            return getattr(self, aggregation)

    def snapshot(self, elapsed: float, trend_stats: tuple[str, ...] = DEFAULT_TREND_STATS) -> dict[str, float]:
        with self._lock:
            return {"value": self.value, "min": self.min, "max": self.max}


class RateMetric(Metric):
    kind = MetricKind.RATE

    def __init__(self, name: str, **kwargs: Any):
        super().__init__(name, **kwargs)
        self.passes = 0

    def _observe(self, value: float) -> None:
        if value:
            self.passes += 1

    def aggregate(self, aggregation: str, elapsed: float) -> float:
        if aggregation != "rate":
            raise KeyError(aggregation)
        with self._lock:
            if self.count == 0:
                raise ValueError(f"Rate {self.name} has no samples")
            return self.passes / self.count

    def snapshot(self, elapsed: float, trend_stats: tuple[str, ...] = DEFAULT_TREND_STATS) -> dict[str, float]:
        with self._lock:
            passes, total = self.passes, self.count
        return {
            "rate": passes / total if total else 0.0,
            "passes": passes,
            "fails": total - passes,
        }


class TrendMetric(Metric):
    kind = MetricKind.TREND

    def __init__(self, name: str, **kwargs: Any):
        super().__init__(name, **kwargs)
        self.values: list[float] = []
        self.total = 0.0
        self.min = math.inf
        self.max = -math.inf

    def _observe(self, value: float) -> None:
        self.values.append(value)
        self.total += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def _sorted_values(self) -> list[float]:
        with self._lock:
            values = list(self.values)
        values.sort()
        return values

    def aggregate(self, aggregation: str, elapsed: float) -> float:
        with self._lock:
            count, total, low, high = self.count, self.total, self.min, self.max
        if count == 0:
            raise ValueError(f"Trend {self.name} has no samples")

        if aggregation == "avg":
            return total / count
        if aggregation == "min":
            return low
        if aggregation == "max":
            return high
        if aggregation == "count":
            return float(count)
        if aggregation == "med":
            return percentile(self._sorted_values(), 50)

        match = _PERCENTILE_RE.match(aggregation)
        if match is None:
            raise KeyError(aggregation)
        return percentile(self._sorted_values(), float(match.group("p")))

    def snapshot(self, elapsed: float, trend_stats: tuple[str, ...] = DEFAULT_TREND_STATS) -> dict[str, float]:
        if self.empty:
            return {"count": 0}
        stats = {stat: self.aggregate(stat, elapsed) for stat in trend_stats}
        stats["count"] = float(self.count)
        return stats


METRIC_CLASSES: dict[MetricKind, type[Metric]] = {
    MetricKind.COUNTER: CounterMetric,
    MetricKind.GAUGE: GaugeMetric,
    MetricKind.RATE: RateMetric,
    MetricKind.TREND: TrendMetric,
}


# =====================================================================
# Sink
# =====================================================================


class MetricSink:
    """
    Owns every metric of one test run.

    A single instance is created by the orchestrator and handed to each
    virtual user; nothing in the engine keeps metrics in module globals.

    Attributes:
        trend_stats: Aggregates reported for Trend metrics in snapshots.
    """

    def __init__(self, trend_stats: tuple[str, ...] = DEFAULT_TREND_STATS):
        self.trend_stats = tuple(trend_stats)
        self._metrics: dict[str, Metric] = {}
        self._pending_submetrics: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._ended: float | None = None

    # ---- run clock ----------------------------------------------------

    def mark_start(self) -> None:
        self._started = time.monotonic()
        self._ended = None

    def mark_end(self) -> None:
        self._ended = time.monotonic()

    @property
    def elapsed(self) -> float:
        end = self._ended if self._ended is not None else time.monotonic()
        return max(end - self._started, 0.0)

    # ---- registration ---------------------------------------------------

    def _get_or_create(self, kind: MetricKind, name: str, is_time: bool = False) -> Metric:
        metric = self._metrics.get(name)
        if metric is None:
            with self._lock:
                metric = self._metrics.get(name)
                if metric is None:
                    validate_metric_name(name)
                    metric = METRIC_CLASSES[kind](name, is_time=is_time)
                    for selector, tags in self._pending_submetrics.pop(name, []):
                        self._attach_submetric(metric, selector, tags)
                    self._metrics[name] = metric

        if metric.kind is not kind:
            raise MetricKindError(
                f"Metric {name!r} is a {metric.kind.value}, not a {kind.value}"
            )
        return metric

    def _attach_submetric(self, parent: Metric, selector: str, tags: dict[str, str]) -> None:
        submetric = METRIC_CLASSES[parent.kind](selector, is_time=parent.is_time, tag_filter=tags)
        parent.attach(submetric)
        self._metrics[selector] = submetric

    def register_submetric(self, selector: str) -> None:
        """
        Start tracking a tag-filtered view of a metric.

        Only samples recorded after registration are counted, so the
        orchestrator registers every sub-metric named by a threshold
        before any virtual user starts.  Registering a bare metric name is
        a no-op.
        """
        name, tags = parse_metric_selector(selector)
        if not tags:
            return
        canonical = canonical_selector(name, tags)
        with self._lock:
            if canonical in self._metrics:
                return
            parent = self._metrics.get(name)
            if parent is None:
                pending = self._pending_submetrics.setdefault(name, [])
                if (canonical, tags) not in pending:
                    pending.append((canonical, tags))
                return
            self._attach_submetric(parent, canonical, tags)

    # ---- writing --------------------------------------------------------

    def add_sample(self, kind: MetricKind, sample: Sample, *, is_time: bool = False) -> None:
        metric = self._get_or_create(kind, sample.metric, is_time=is_time)
        metric.add(sample.value, sample.tags)

    def record(
        self,
        kind: MetricKind | str,
        name: str,
        value: float,
        tags: Mapping[str, Any] | None = None,
        *,
        is_time: bool = False,
    ) -> Sample:
        """
        Record one observation.

        Args:
            kind: Metric kind (enum member or its string value).
            name: Metric name; created on first use.
            value: Observed value.  For Rate metrics any truthy value
                counts as a pass.
            tags: Optional tags attached to the sample.
            is_time: Marks a Trend as holding durations in milliseconds.

        Returns:
            The immutable :class:`Sample` that was recorded.

        Raises:
            MetricKindError: If *name* already exists with another kind.
            ConfigurationError: If *name* is not a legal metric name.
        """
        sample = Sample(name, float(value), time.time(), freeze_tags(tags))
        self.add_sample(MetricKind(kind), sample, is_time=is_time)
        return sample

    def counter(self, name: str) -> MetricHandle:
        return MetricHandle(self, MetricKind.COUNTER, name)

    def gauge(self, name: str) -> MetricHandle:
        return MetricHandle(self, MetricKind.GAUGE, name)

    def rate(self, name: str) -> MetricHandle:
        return MetricHandle(self, MetricKind.RATE, name)

    def trend(self, name: str, is_time: bool = False) -> MetricHandle:
        return MetricHandle(self, MetricKind.TREND, name, is_time=is_time)

    # ---- reading --------------------------------------------------------

    def get(self, name: str) -> Metric | None:
        return self._metrics.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._metrics)

    def snapshot(self, name: str) -> dict[str, Any] | None:
        """
        Return the aggregate view of one metric, or ``None`` if never recorded.

        The returned dict holds ``kind`` plus the kind-specific aggregates
        (``count``/``rate`` for counters, ``value``/``min``/``max`` for
        gauges, ``rate``/``passes``/``fails`` for rates, and the configured
        trend stats for trends).
        """
        metric = self._metrics.get(name)
        if metric is None or metric.empty:
            return None
        values: dict[str, Any] = {"kind": metric.kind.value}
        if metric.kind is MetricKind.TREND:
            values["contains"] = "time" if metric.is_time else "default"
        values.update(metric.snapshot(self.elapsed, self.trend_stats))
        return values

    def snapshot_all(self) -> dict[str, dict[str, Any]]:
        snapshots = {}
        for name in self.names():
            snapshot = self.snapshot(name)
            if snapshot is not None:
                snapshots[name] = snapshot
        return snapshots


def canonical_selector(name: str, tags: Mapping[str, str]) -> str:
    """Render a selector with tags sorted so equivalent filters share a key."""
    if not tags:
        return name
    inner = ",".join(f"{key}:{tags[key]}" for key in sorted(tags))
    return f"{name}{{{inner}}}"


class MetricHandle:
    """
    A named custom metric bound to a sink.

    Creating the handle registers the metric, so a kind clash surfaces
    at definition time rather than on the first ``add``.
    """

    def __init__(self, sink: MetricSink, kind: MetricKind, name: str, *, is_time: bool = False):
        self.sink = sink
        self.kind = kind
        self.name = name
        self.is_time = is_time
        sink._get_or_create(kind, name, is_time=is_time)

    def add(self, value: float, tags: Mapping[str, Any] | None = None) -> Sample:
        return self.sink.record(self.kind, self.name, value, tags, is_time=self.is_time)

    def __repr__(self) -> str:
        return f"<{self.kind.value} {self.name}>"
