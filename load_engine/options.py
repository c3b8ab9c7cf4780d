"""
Load Engine — Test Options.

Validates the options mapping a test script exports (or a YAML file with
the same structure) into a :class:`TestOptions` object: the load profile,
the thresholds, the trend stats shown in the summary and an optional base
target override.

Example YAML::

    scenarios:
      smoke:
        executor: constant-vus
        vus: 1
        duration: 10s
    thresholds:
      http_req_failed: ["rate<0.01"]
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from load_engine.errors import ConfigurationError
from load_engine.profile import LoadProfile, parse_load_profile
from load_engine.thresholds import Threshold, parse_thresholds

_PROFILE_KEYS = {"scenarios", "stages", "vus", "duration", "iterations"}
_TREND_STAT_RE = re.compile(r"^(avg|min|med|max|count|p\(\d+(?:\.\d+)?\))$")


@dataclass(frozen=True)
class TestOptions:
    """
    Parsed, validated options of one test run.

    Attributes:
        profile: Scenarios to schedule.
        thresholds: Pass/fail rules.
        summary_trend_stats: Trend aggregates for the summary, or ``None``
            to use the configured default.
        base_url: Target substituted into relative request URLs, or
            ``None`` to use the configured default.
    """

    __test__ = False

    profile: LoadProfile
    thresholds: tuple[Threshold, ...] = ()
    summary_trend_stats: tuple[str, ...] | None = None
    base_url: str | None = None


def parse_options(raw: Mapping[str, Any] | None) -> TestOptions:
    """
    Validate an options mapping.

    Raises:
        ConfigurationError: On unknown keys or any invalid value.
    """
    raw = dict(raw or {})
    known = _PROFILE_KEYS | {"thresholds", "summaryTrendStats", "baseUrl"}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(f"Unknown options: {sorted(unknown)}")

    trend_stats = raw.get("summaryTrendStats")
    if trend_stats is not None:
        if isinstance(trend_stats, str) or not all(
            isinstance(stat, str) and _TREND_STAT_RE.match(stat) for stat in trend_stats
        ):
            raise ConfigurationError(f"Invalid summaryTrendStats: {trend_stats!r}")
        trend_stats = tuple(trend_stats)

    base_url = raw.get("baseUrl")
    if base_url is not None and not isinstance(base_url, str):
        raise ConfigurationError("baseUrl must be a string")

    return TestOptions(
        profile=parse_load_profile({key: raw[key] for key in _PROFILE_KEYS if key in raw}),
        thresholds=parse_thresholds(raw.get("thresholds")),
        summary_trend_stats=trend_stats,
        base_url=base_url,
    )


def read_options_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML options file into a plain mapping."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read options file {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Options file {path} is not valid YAML") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Options file {path} must contain a mapping")
    return dict(data)


def load_options(path: str | Path) -> TestOptions:
    return parse_options(read_options_file(path))
