"""
Load Engine — Threshold Evaluator.

Thresholds are pass/fail rules over aggregate metric values, declared per
metric (or per tag-filtered sub-metric)::

    thresholds = {
        "http_req_failed": ["rate<0.01"],
        "http_req_duration": ["p(95)<500", "p(99)<1000"],
        "http_req_duration{status:200}": [
            {"threshold": "avg<300", "abortOnFail": True, "delayAbortEval": "10s"},
        ],
    }

An expression is ``<aggregation> <operator> <number>``.  Thresholds are
parsed once, before any load is produced, and evaluated against the final
metrics after the run.  Those flagged ``abortOnFail`` are additionally
polled during the run by :class:`ThresholdMonitor`, which stops the test
as soon as one of them is breached.

Key Concepts Demonstrated:
- A tiny expression grammar parsed with one regular expression
- Failing closed: a metric that was never recorded fails its thresholds
- Periodic background evaluation on the same event loop as the load
"""

from __future__ import annotations

import asyncio
import logging
import operator
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from load_engine.errors import ConfigurationError
from load_engine.metrics import MetricKind, MetricSink, canonical_selector, parse_metric_selector
from load_engine.profile import parse_duration

logger = logging.getLogger(__name__)

EXPRESSION_RE = re.compile(
    r"^\s*(?P<aggregation>count|rate|value|avg|min|max|med|p\(\s*\d+(?:\.\d+)?\s*\))"
    r"\s*(?P<operator><=|>=|===|==|!=|<|>)"
    r"\s*(?P<bound>[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}

_ENTRY_KEYS = {"threshold", "abortOnFail", "delayAbortEval"}


def _valid_for(kind: MetricKind, aggregation: str) -> bool:
    if kind is MetricKind.COUNTER:
        return aggregation in ("count", "rate")
    if kind is MetricKind.GAUGE:
        return aggregation in ("value", "min", "max")
    if kind is MetricKind.RATE:
        return aggregation == "rate"
    return aggregation in ("avg", "min", "max", "med", "count") or aggregation.startswith("p(")


@dataclass(frozen=True)
class Threshold:
    """One parsed pass/fail rule."""

    metric: str
    expression: str
    aggregation: str
    operator: str
    bound: float
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    @property
    def label(self) -> str:
        return f"{self.metric}: {self.expression}"

    def holds(self, observed: float) -> bool:
        return OPERATORS[self.operator](observed, self.bound)


@dataclass(frozen=True)
class ThresholdResult:
    """
    Outcome of evaluating one :class:`Threshold`.

    Attributes:
        threshold: The rule that was evaluated.
        passed: Whether the rule held.
        observed: The aggregate value compared, or ``None`` if none
            could be computed.
        reason: Why the rule failed without a comparison (missing metric,
            aggregation not valid for the metric kind).
    """

    threshold: Threshold
    passed: bool
    observed: float | None = None
    reason: str | None = None


@dataclass(frozen=True)
class ThresholdReport:
    """All threshold results of one evaluation."""

    results: tuple[ThresholdResult, ...] = ()

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failed(self) -> list[str]:
        return [result.threshold.label for result in self.results if not result.passed]

    def for_metric(self, metric: str) -> list[ThresholdResult]:
        return [result for result in self.results if result.threshold.metric == metric]


def parse_expression(metric: str, expression: str, *, abort_on_fail: bool = False, delay_abort_eval: float = 0.0) -> Threshold:
    """
    Parse one threshold expression such as ``"p(95) < 500"``.

    Raises:
        ConfigurationError: If the expression does not match the grammar.
    """
    if not isinstance(expression, str):
        raise ConfigurationError(f"Threshold for {metric!r} must be a string, got {expression!r}")
    match = EXPRESSION_RE.match(expression)
    if match is None:
        raise ConfigurationError(f"Malformed threshold {expression!r} on {metric!r}")

    aggregation = re.sub(r"\s+", "", match.group("aggregation"))
    if aggregation.startswith("p("):
        value = float(aggregation[2:-1])
        if value > 100:
            raise ConfigurationError(f"Percentile out of range in {expression!r} on {metric!r}")

    return Threshold(
        metric=metric,
        expression=expression.strip(),
        aggregation=aggregation,
        operator=match.group("operator"),
        bound=float(match.group("bound")),
        abort_on_fail=abort_on_fail,
        delay_abort_eval=delay_abort_eval,
    )


def parse_thresholds(raw: Mapping[str, Any] | None) -> tuple[Threshold, ...]:
    """
    Parse the ``thresholds`` option.

    Each metric key maps to a list whose entries are either expression
    strings or ``{threshold, abortOnFail, delayAbortEval}`` mappings.  A
    single expression string is accepted in place of a one-item list.

    Raises:
        ConfigurationError: On any malformed selector, entry or expression.
    """
    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        raise ConfigurationError("thresholds must be a mapping of metric to expressions")

    thresholds = []
    for selector, entries in raw.items():
        name, tags = parse_metric_selector(selector)
        metric = canonical_selector(name, tags)
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        if not isinstance(entries, Sequence) or not entries:
            raise ConfigurationError(f"Thresholds for {selector!r} must be a non-empty list")

        for entry in entries:
            if isinstance(entry, Mapping):
                unknown = set(entry) - _ENTRY_KEYS
                if unknown:
                    raise ConfigurationError(f"Threshold on {selector!r} has unknown keys: {sorted(unknown)}")
                if "threshold" not in entry:
                    raise ConfigurationError(f"Threshold on {selector!r} is missing its expression")
                abort_on_fail = entry.get("abortOnFail", False)
                if not isinstance(abort_on_fail, bool):
                    raise ConfigurationError(f"abortOnFail on {selector!r} must be true or false")
                thresholds.append(
                    parse_expression(
                        metric,
                        entry["threshold"],
                        abort_on_fail=abort_on_fail,
                        delay_abort_eval=parse_duration(entry.get("delayAbortEval", 0), "delayAbortEval"),
                    )
                )
            else:
                thresholds.append(parse_expression(metric, entry))
    return tuple(thresholds)


def evaluate_threshold(threshold: Threshold, sink: MetricSink) -> ThresholdResult:
    """Evaluate one threshold against the sink's current aggregates."""
    metric = sink.get(threshold.metric)
    if metric is None or metric.empty:
        return ThresholdResult(threshold, passed=False, reason="metric was never recorded")

    if not _valid_for(metric.kind, threshold.aggregation):
        return ThresholdResult(
            threshold,
            passed=False,
            reason=f"{threshold.aggregation} is not valid for a {metric.kind.value} metric",
        )

    try:
        observed = metric.aggregate(threshold.aggregation, sink.elapsed)
    except (KeyError, ValueError) as exc:
        return ThresholdResult(threshold, passed=False, reason=str(exc))
    return ThresholdResult(threshold, passed=threshold.holds(observed), observed=observed)


def evaluate(thresholds: Iterable[Threshold], sink: MetricSink) -> ThresholdReport:
    report = ThresholdReport(tuple(evaluate_threshold(threshold, sink) for threshold in thresholds))
    for result in report.results:
        if not result.passed:
            logger.info(
                "Threshold failed: %s (observed=%s%s)",
                result.threshold.label,
                result.observed,
                f", {result.reason}" if result.reason else "",
            )
    return report


class ThresholdMonitor:
    """
    Polls ``abortOnFail`` thresholds while the test is running.

    Each poll evaluates every abort-on-fail threshold whose
    ``delayAbortEval`` has elapsed.  A metric that has no samples yet is
    skipped rather than treated as a breach, since the run may simply not
    have reached the code that records it.

    Args:
        thresholds: All thresholds of the run; non-abort ones are ignored.
        sink: Run-wide metric sink.
        on_abort: Called once with the breached threshold labels.
        interval: Seconds between polls.
    """

    def __init__(
        self,
        thresholds: Iterable[Threshold],
        sink: MetricSink,
        on_abort: Callable[[list[str]], None],
        interval: float = 2.0,
    ):
        self.thresholds = [threshold for threshold in thresholds if threshold.abort_on_fail]
        self.sink = sink
        self.on_abort = on_abort
        self.interval = interval
        self.triggered: list[str] = []

    def poll(self) -> list[str]:
        """Evaluate eligible thresholds now and return the breached labels."""
        elapsed = self.sink.elapsed
        breached = []
        for threshold in self.thresholds:
            if elapsed < threshold.delay_abort_eval:
                continue
            metric = self.sink.get(threshold.metric)
            if metric is None or metric.empty:
                continue
            if not evaluate_threshold(threshold, self.sink).passed:
                breached.append(threshold.label)
        return breached

    async def run(self) -> None:
        if not self.thresholds:
            return
        while True:
            await asyncio.sleep(self.interval)
            breached = self.poll()
            if breached:
                self.triggered = breached
                logger.warning("abortOnFail threshold breached: %s", ", ".join(breached))
                self.on_abort(breached)
                return
