"""
Load Engine — Load Profiles.

Turns the declarative ``stages`` / ``scenarios`` options into validated,
immutable :class:`LoadProfile` objects and answers the one question the
scheduler keeps asking: *how many virtual users should be running right
now?*

Three executor kinds are supported:

- ``ramping-vus`` — linear ramps between consecutive ``{duration, target}``
  stages, starting from ``startVUs`` (0 by default)
- ``constant-vus`` — a fixed number of users for a fixed duration
- ``per-vu-iterations`` — each user runs a fixed number of iterations,
  capped by ``maxDuration``

A bare top-level ``stages`` list is shorthand for one ``ramping-vus``
scenario called ``default``; top-level ``vus`` + ``duration`` (or
``iterations``) likewise becomes a single ``default`` scenario.

Key Concepts Demonstrated:
- Parse-once, immutable-thereafter configuration objects
- Human-friendly duration strings (``"1m30s"``, ``"500ms"``)
- Piecewise-linear interpolation of a target over time
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from load_engine.errors import ConfigurationError

DEFAULT_SCENARIO = "default"
DEFAULT_MAX_DURATION = 600.0

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_SCENARIO_NAME_RE = re.compile(r"^[0-9A-Za-z_-]+$")

# snake_case name -> accepted spellings (camelCase first).
_SCENARIO_KEYS = {
    "executor": ("executor",),
    "exec_name": ("exec", "exec_name"),
    "start_time": ("startTime", "start_time"),
    "stages": ("stages",),
    "start_vus": ("startVUs", "start_vus"),
    "vus": ("vus",),
    "duration": ("duration",),
    "iterations": ("iterations",),
    "max_duration": ("maxDuration", "max_duration"),
    "think_time": ("thinkTime", "think_time"),
    "graceful_stop": ("gracefulStop", "graceful_stop"),
    "tags": ("tags",),
}


class ExecutorKind(str, Enum):
    RAMPING_VUS = "ramping-vus"
    CONSTANT_VUS = "constant-vus"
    PER_VU_ITERATIONS = "per-vu-iterations"


@dataclass(frozen=True)
class Stage:
    """One linear ramp segment: reach *target* users over *duration* seconds."""

    duration: float
    target: int


@dataclass(frozen=True)
class Scenario:
    """
    An independently scheduled, named sub-test.

    Attributes:
        name: Unique scenario name, also used as the ``scenario`` tag.
        executor: How virtual users are scheduled.
        exec_name: Name of the iteration function this scenario runs.
        start_time: Offset in seconds from the start of the run.
        stages: Ramp segments (``ramping-vus`` only).
        start_vus: Users running at offset 0 (``ramping-vus`` only).
        vus: Fixed user count (``constant-vus``, ``per-vu-iterations``).
        duration: Run time in seconds (``constant-vus``).
        iterations: Iterations per user (``per-vu-iterations``).
        max_duration: Hard cap in seconds (``per-vu-iterations``).
        think_time: Seconds slept after every iteration.
        graceful_stop: Seconds in-flight iterations may overrun the end
            of the scenario, or ``None`` for the configured default.
        tags: Extra tags attached to every sample of this scenario.
    """

    name: str
    executor: ExecutorKind
    exec_name: str = DEFAULT_SCENARIO
    start_time: float = 0.0
    stages: tuple[Stage, ...] = ()
    start_vus: int = 0
    vus: int = 1
    duration: float = 0.0
    iterations: int = 1
    max_duration: float = DEFAULT_MAX_DURATION
    think_time: float = 0.0
    graceful_stop: float | None = None
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def scheduled_duration(self) -> float:
        """Seconds the scenario is scheduled to run, excluding graceful stop."""
        if self.executor is ExecutorKind.RAMPING_VUS:
            return sum(stage.duration for stage in self.stages)
        if self.executor is ExecutorKind.CONSTANT_VUS:
            return self.duration
        return self.max_duration

    @property
    def end_offset(self) -> float:
        return self.start_time + self.scheduled_duration

    @property
    def max_vus(self) -> int:
        if self.executor is ExecutorKind.RAMPING_VUS:
            return max([self.start_vus, *(stage.target for stage in self.stages)])
        return self.vus

    def target_vus(self, elapsed: float) -> int:
        """Number of users this scenario wants running *elapsed* seconds in."""
        if self.executor is ExecutorKind.RAMPING_VUS:
            return vus_at(self.stages, elapsed, self.start_vus)
        return self.vus if elapsed < self.scheduled_duration else 0


@dataclass(frozen=True)
class LoadProfile:
    """The full set of scenarios of one run."""

    scenarios: tuple[Scenario, ...]

    @property
    def total_duration(self) -> float:
        """Offset at which the last scenario is scheduled to finish."""
        return max((scenario.end_offset for scenario in self.scenarios), default=0.0)

    @property
    def max_vus(self) -> int:
        return sum(scenario.max_vus for scenario in self.scenarios)

    @property
    def exec_names(self) -> set[str]:
        return {scenario.exec_name for scenario in self.scenarios}

    def scenario(self, name: str) -> Scenario:
        for scenario in self.scenarios:
            if scenario.name == name:
                return scenario
        raise KeyError(name)


# =====================================================================
# Interpolation
# =====================================================================


def target_at(stages: Sequence[Stage], elapsed: float, start_vus: int = 0) -> float:
    """
    Piecewise-linear target at *elapsed* seconds into a staged profile.

    Each stage ramps linearly from the previous stage's target (or
    *start_vus* for the first stage) to its own target.  A zero-duration
    stage jumps straight to its target.  Past the last stage the final
    target holds.

    Args:
        stages: Ordered ramp segments.
        elapsed: Seconds since the profile started.
        start_vus: Value at ``elapsed == 0``.

    Returns:
        The (fractional) target user count.
    """
    previous = float(start_vus)
    offset = 0.0
    for stage in stages:
        if stage.duration > 0 and elapsed < offset + stage.duration:
            fraction = (elapsed - offset) / stage.duration
            return previous + (stage.target - previous) * max(fraction, 0.0)
        offset += stage.duration
        previous = float(stage.target)
    return previous


def vus_at(stages: Sequence[Stage], elapsed: float, start_vus: int = 0) -> int:
    """:func:`target_at` rounded half-up to a whole number of users."""
    return int(math.floor(target_at(stages, elapsed, start_vus) + 0.5))


# =====================================================================
# Parsing
# =====================================================================


def parse_duration(value: Any, field_name: str = "duration") -> float:
    """
    Convert a duration option to seconds.

    Accepts plain numbers (seconds), numeric strings, or unit strings made
    of one or more ``<number><unit>`` parts with units ``ms``, ``s``,
    ``m`` and ``h`` — e.g. ``"5s"``, ``"500ms"``, ``"1m30s"``.

    Raises:
        ConfigurationError: If the value is malformed or negative.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"{field_name} must be a duration, got {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            seconds = _parse_unit_duration(text, field_name)
    else:
        raise ConfigurationError(f"{field_name} must be a duration, got {value!r}")

    if seconds < 0 or math.isnan(seconds):
        raise ConfigurationError(f"{field_name} must be non-negative, got {value!r}")
    return seconds


def _parse_unit_duration(text: str, field_name: str) -> float:
    position = 0
    seconds = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ConfigurationError(f"{field_name} has an invalid duration: {text!r}")
    return seconds


def _non_negative_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{field_name} must be an integer, got {value!r}")
    if value < 0:
        raise ConfigurationError(f"{field_name} must be non-negative, got {value!r}")
    return value


def parse_stages(raw: Any, where: str = "stages") -> tuple[Stage, ...]:
    """Validate a list of ``{duration, target}`` mappings."""
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)) or not raw:
        raise ConfigurationError(f"{where} must be a non-empty list of stages")

    stages = []
    for index, entry in enumerate(raw):
        label = f"{where}[{index}]"
        if not isinstance(entry, Mapping):
            raise ConfigurationError(f"{label} must be a mapping with duration and target")
        unknown = set(entry) - {"duration", "target"}
        if unknown:
            raise ConfigurationError(f"{label} has unknown keys: {sorted(unknown)}")
        if "duration" not in entry or "target" not in entry:
            raise ConfigurationError(f"{label} needs both duration and target")
        stages.append(
            Stage(
                duration=parse_duration(entry["duration"], f"{label}.duration"),
                target=_non_negative_int(entry["target"], f"{label}.target"),
            )
        )
    return tuple(stages)


def _normalise_keys(raw: Mapping[str, Any], where: str) -> dict[str, Any]:
    spelling_to_key = {
        spelling: key for key, spellings in _SCENARIO_KEYS.items() for spelling in spellings
    }
    normalised: dict[str, Any] = {}
    for spelling, value in raw.items():
        key = spelling_to_key.get(spelling)
        if key is None:
            raise ConfigurationError(f"{where} has unknown option {spelling!r}")
        if key in normalised:
            raise ConfigurationError(f"{where} sets {key!r} more than once")
        normalised[key] = value
    return normalised


def parse_scenario(name: str, raw: Mapping[str, Any]) -> Scenario:
    """
    Build one :class:`Scenario` from its option mapping.

    Raises:
        ConfigurationError: On an unknown executor, a missing or invalid
            executor parameter, or an unknown option key.
    """
    where = f"scenario {name!r}"
    if not isinstance(name, str) or not _SCENARIO_NAME_RE.match(name):
        raise ConfigurationError(f"Invalid scenario name: {name!r}")
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{where} must be a mapping")

    options = _normalise_keys(raw, where)
    if "executor" not in options:
        raise ConfigurationError(f"{where} is missing an executor")
    try:
        executor = ExecutorKind(options["executor"])
    except ValueError as exc:
        raise ConfigurationError(f"{where} has unknown executor {options['executor']!r}") from exc

    kwargs: dict[str, Any] = {"name": name, "executor": executor}
    if "exec_name" in options:
        if not isinstance(options["exec_name"], str) or not options["exec_name"]:
            raise ConfigurationError(f"{where}.exec must be a function name")
        kwargs["exec_name"] = options["exec_name"]
    if "start_time" in options:
        kwargs["start_time"] = parse_duration(options["start_time"], f"{where}.startTime")
    if "think_time" in options:
        kwargs["think_time"] = parse_duration(options["think_time"], f"{where}.thinkTime")
    if "graceful_stop" in options:
        kwargs["graceful_stop"] = parse_duration(options["graceful_stop"], f"{where}.gracefulStop")
    if "tags" in options:
        if not isinstance(options["tags"], Mapping):
            raise ConfigurationError(f"{where}.tags must be a mapping")
        kwargs["tags"] = MappingProxyType({str(k): str(v) for k, v in options["tags"].items()})

    if executor is ExecutorKind.RAMPING_VUS:
        _reject(options, where, executor, "vus", "duration", "iterations", "max_duration")
        kwargs["stages"] = parse_stages(options.get("stages"), f"{where}.stages")
        kwargs["start_vus"] = _non_negative_int(options.get("start_vus", 0), f"{where}.startVUs")
    elif executor is ExecutorKind.CONSTANT_VUS:
        _reject(options, where, executor, "stages", "start_vus", "iterations", "max_duration")
        if "duration" not in options:
            raise ConfigurationError(f"{where} needs a duration")
        kwargs["vus"] = _non_negative_int(options.get("vus", 1), f"{where}.vus")
        kwargs["duration"] = parse_duration(options["duration"], f"{where}.duration")
    else:
        _reject(options, where, executor, "stages", "start_vus", "duration")
        kwargs["vus"] = _non_negative_int(options.get("vus", 1), f"{where}.vus")
        kwargs["iterations"] = _non_negative_int(options.get("iterations", 1), f"{where}.iterations")
        kwargs["max_duration"] = parse_duration(
            options.get("max_duration", DEFAULT_MAX_DURATION), f"{where}.maxDuration"
        )

    return Scenario(**kwargs)


def _reject(options: Mapping[str, Any], where: str, executor: ExecutorKind, *keys: str) -> None:
    present = [key for key in keys if key in options]
    if present:
        raise ConfigurationError(f"{where}: {executor.value} does not accept {present}")


def parse_load_profile(options: Mapping[str, Any]) -> LoadProfile:
    """
    Build the run's :class:`LoadProfile` from top-level options.

    Precedence: ``scenarios`` (mapping of name to scenario options, or a
    list of scenario mappings each carrying a ``name``), then ``stages``,
    then ``vus`` + ``duration`` / ``iterations``.  With none of these the
    run is a single user doing a single iteration.

    Raises:
        ConfigurationError: If the profile is malformed, mixes
            ``scenarios`` with top-level shortcuts, or repeats a scenario
            name.
    """
    shortcuts = [key for key in ("stages", "vus", "duration", "iterations") if key in options]

    if "scenarios" in options:
        if shortcuts:
            raise ConfigurationError(f"scenarios cannot be combined with top-level {shortcuts}")
        return LoadProfile(_parse_scenarios(options["scenarios"]))

    if "stages" in options:
        if set(shortcuts) - {"stages"}:
            raise ConfigurationError("stages cannot be combined with vus/duration/iterations")
        raw: dict[str, Any] = {"executor": ExecutorKind.RAMPING_VUS.value, "stages": options["stages"]}
    elif "duration" in options:
        if "iterations" in options:
            raise ConfigurationError("Set either duration or iterations at top level, not both")
        raw = {
            "executor": ExecutorKind.CONSTANT_VUS.value,
            "vus": options.get("vus", 1),
            "duration": options["duration"],
        }
    else:
        raw = {
            "executor": ExecutorKind.PER_VU_ITERATIONS.value,
            "vus": options.get("vus", 1),
            "iterations": options.get("iterations", 1),
        }
    return LoadProfile((parse_scenario(DEFAULT_SCENARIO, raw),))


def _parse_scenarios(raw: Any) -> tuple[Scenario, ...]:
    if isinstance(raw, Mapping):
        entries = list(raw.items())
    elif isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
        entries = []
        for index, entry in enumerate(raw):
            if not isinstance(entry, Mapping) or "name" not in entry:
                raise ConfigurationError(f"scenarios[{index}] must be a mapping with a name")
            body = {key: value for key, value in entry.items() if key != "name"}
            entries.append((entry["name"], body))
    else:
        raise ConfigurationError("scenarios must be a mapping or a list")

    if not entries:
        raise ConfigurationError("scenarios must define at least one scenario")

    seen: set[str] = set()
    scenarios = []
    for name, body in entries:
        if name in seen:
            raise ConfigurationError(f"Duplicate scenario name: {name!r}")
        seen.add(name)
        scenarios.append(parse_scenario(name, body))
    return tuple(scenarios)
