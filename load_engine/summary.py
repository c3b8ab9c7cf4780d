"""
Load Engine — End-of-test Summary.

Turns a :class:`~load_engine.lifecycle.TestResult` into:

- a structured summary dict (per-metric kind and aggregates, per-threshold
  outcome, overall state) for machines and ``handle_summary`` callbacks
- a fixed-width text table for CI logs

and writes ``handle_summary`` outputs to stdout, stderr or files.

Key Concepts Demonstrated:
- One structured representation, many renderings
- Human-readable summary table printed for CI logs
"""

from __future__ import annotations

import json
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from load_engine.lifecycle import TestResult

_WIDTH = 72


def build_summary(result: TestResult) -> dict[str, Any]:
    """
    Build the structured end-of-test summary.

    Returns:
        A dict with ``state`` (verdict), ``metrics`` (name to
        ``{type, contains, values, thresholds}``), ``thresholds`` (one
        entry per rule) and ``errors``.
    """
    metrics: dict[str, dict[str, Any]] = {}
    for name, snapshot in result.metrics.items():
        values = {key: value for key, value in snapshot.items() if key not in ("kind", "contains")}
        entry: dict[str, Any] = {"type": snapshot["kind"], "values": values}
        if "contains" in snapshot:
            entry["contains"] = snapshot["contains"]
        metrics[name] = entry

    thresholds = []
    for outcome in result.threshold_results.results:
        threshold = outcome.threshold
        thresholds.append(
            {
                "metric": threshold.metric,
                "expression": threshold.expression,
                "ok": outcome.passed,
                "observed": outcome.observed,
                "reason": outcome.reason,
                "abortOnFail": threshold.abort_on_fail,
            }
        )
        entry = metrics.setdefault(threshold.metric, {"type": None, "values": {}})
        entry.setdefault("thresholds", {})[threshold.expression] = {"ok": outcome.passed}

    return {
        "state": {
            "passed": result.passed,
            "status": result.status.value,
            "executed": result.executed,
            "aborted": result.aborted,
            "duration": result.duration,
        },
        "metrics": metrics,
        "thresholds": thresholds,
        "errors": {"setup": result.error, "teardown": result.teardown_error},
    }


def _format_value(key: str, value: Any, entry: Mapping[str, Any]) -> str:
    if not isinstance(value, (int, float)):
        return f"{key}={value}"
    if entry.get("type") == "rate" and key == "rate":
        return f"{value * 100:.2f}%"
    if entry.get("contains") == "time" and key != "count":
        return f"{key}={value:.2f}ms"
    if key == "rate":
        return f"{value:.2f}/s"
    if float(value).is_integer():
        return f"{key}={int(value)}"
    return f"{key}={value:.2f}"


def text_summary(summary: Mapping[str, Any]) -> str:
    """Render a structured summary as a fixed-width table."""
    lines = ["Load Test Summary", "-" * _WIDTH]

    for name in sorted(summary["metrics"]):
        entry = summary["metrics"][name]
        values = entry.get("values") or {}
        if not values:
            rendered = "(no samples)"
        else:
            rendered = " ".join(_format_value(key, value, entry) for key, value in values.items())
        marker = ""
        if entry.get("thresholds"):
            marker = "✓ " if all(t["ok"] for t in entry["thresholds"].values()) else "✗ "
        lines.append(f"{marker + name:<34}{rendered}")

    if summary["thresholds"]:
        lines.append("-" * _WIDTH)
        lines.append(f"{'Threshold':<48}{'Actual':>12}{'Status':>12}")
        lines.append("-" * _WIDTH)
        for threshold in summary["thresholds"]:
            label = f"{threshold['metric']}: {threshold['expression']}"
            observed = threshold["observed"]
            actual = f"{observed:>12.2f}" if observed is not None else f"{'n/a':>12}"
            status = "PASS" if threshold["ok"] else "FAIL"
            lines.append(f"{label:<48}{actual}{status:>12}")

    state = summary["state"]
    lines.append("-" * _WIDTH)
    lines.append(f"Overall: {'PASS' if state['passed'] else 'FAIL'} ({state['status']})")
    for phase, message in summary["errors"].items():
        if message:
            lines.append(f"{phase.capitalize()} error: {message}")
    return "\n".join(lines) + "\n"


def write_outputs(outputs: Mapping[str, Any]) -> list[str]:
    """
    Write the mapping returned by a ``handle_summary`` callback.

    Keys are ``"stdout"``, ``"stderr"`` or a file path; values are text,
    bytes, or any JSON-serialisable object.

    Returns:
        The targets that were written, in order.
    """
    written = []
    for target, content in outputs.items():
        if not isinstance(content, (str, bytes)):
            content = json.dumps(content, indent=2, default=str)

        if target in ("stdout", "stderr"):
            stream = sys.stdout if target == "stdout" else sys.stderr
            stream.write(content.decode("utf-8") if isinstance(content, bytes) else content)
            stream.flush()
        else:
            path = Path(target)
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")
        written.append(target)
    return written
