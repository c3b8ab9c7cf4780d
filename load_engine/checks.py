"""
Load Engine — Checks.

A check is a named business assertion evaluated against a value (usually a
response).  Unlike an ``assert``, a failing check does not stop the
iteration: it is recorded as a failed sample of the built-in ``checks``
Rate metric, which thresholds such as ``checks: rate > 0.95`` then judge.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from load_engine.metrics import MetricKind, MetricSink

logger = logging.getLogger(__name__)

CHECKS_METRIC = "checks"


def check(
    sink: MetricSink,
    value: Any,
    assertions: Mapping[str, Callable[[Any], Any]],
    tags: Mapping[str, Any] | None = None,
) -> bool:
    """
    Evaluate each named assertion against *value* and record the outcome.

    Args:
        sink: Run-wide metric sink.
        value: Object handed to every assertion.
        assertions: Mapping of check name to predicate.
        tags: Extra tags for the recorded samples.

    Returns:
        ``True`` if every assertion returned a truthy value.

    Raises:
        Exception: Whatever an assertion raises propagates, failing the
            iteration.
    """
    all_passed = True
    for name, assertion in assertions.items():
        passed = bool(assertion(value))
        sink.record(MetricKind.RATE, CHECKS_METRIC, passed, {**(tags or {}), "check": name})
        if not passed:
            logger.debug("Check failed: %s", name)
            all_passed = False
    return all_passed
