"""
Load Engine — Lifecycle Orchestrator.

Drives one test run through its phases::

    Init ─► Setup ─► Running ─► Teardown ─► Summarized
              │                                 ▲
              └──────── setup failed ───────────┘

- **Init** — options, profile and thresholds are validated in the
  :class:`LoadTest` constructor.  Anything malformed raises
  :class:`~load_engine.errors.ConfigurationError` and no load is produced.
- **Setup** — ``setup(vu)`` runs once; its return value is handed to
  every iteration and to teardown.  If it fails, the run goes straight to
  Summarized: no virtual user is started and teardown is skipped.
- **Running** — the :class:`~load_engine.scheduler.Scheduler` executes
  the load profile while a :class:`~load_engine.thresholds.ThresholdMonitor`
  watches ``abortOnFail`` thresholds.
- **Teardown** — ``teardown(vu, data)`` runs once whenever Running was
  entered, including after an early abort.
- **Summarized** — an immutable :class:`TestResult` is produced.

User callbacks are wrapped with :func:`~load_engine.errors.capture`, so the
orchestrator branches on ``Ok`` / ``Err`` outcomes instead of letting
exceptions escape: a run always ends with a result.

Usage::

    async def default(vu, data):
        await vu.http.get("/")

    result = LoadTest({"vus": 2, "duration": "10s"}, default=default).run()
    print(result.status)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from load_engine.config import Config, get_config
from load_engine.errors import (
    ConfigurationError,
    Err,
    LoadEngineError,
    Outcome,
    SetupError,
    TeardownError,
    ThresholdViolation,
    capture,
)
from load_engine.http import HttpClient, build_async_client
from load_engine.metrics import MetricSink
from load_engine.options import TestOptions, parse_options
from load_engine.scheduler import IterationFunction, Scheduler, VUContext
from load_engine.summary import build_summary
from load_engine.thresholds import ThresholdMonitor, ThresholdReport, evaluate

logger = logging.getLogger(__name__)

SummaryHandler = Callable[[dict[str, Any]], Mapping[str, Any]]


class Phase(str, Enum):
    INIT = "init"
    SETUP = "setup"
    RUNNING = "running"
    TEARDOWN = "teardown"
    SUMMARIZED = "summarized"


class TestStatus(str, Enum):
    """Overall verdict of a run."""

    __test__ = False

    PASSED = "passed"
    THRESHOLDS_FAILED = "thresholds_failed"
    ABORTED_BY_THRESHOLD = "aborted_by_threshold"
    SETUP_FAILED = "setup_failed"
    TEARDOWN_FAILED = "teardown_failed"


@dataclass(frozen=True)
class TestResult:
    """
    Final, immutable outcome of a run.

    Attributes:
        passed: ``True`` only if the run executed, was not aborted, every
            threshold held and teardown succeeded.
        status: Detailed verdict.
        executed: ``False`` when the run could not produce load at all
            (setup failed).
        aborted: Whether an ``abortOnFail`` threshold stopped the run.
        threshold_results: Per-threshold outcomes.
        metrics: Snapshot of every recorded metric, taken together with
            the threshold evaluation, so teardown traffic is in neither.
        error: Setup failure message, if any.
        teardown_error: Teardown failure message, if any.
        duration: Wall-clock seconds from setup start to the end of teardown.
    """

    __test__ = False

    passed: bool
    status: TestStatus
    executed: bool
    aborted: bool = False
    threshold_results: ThresholdReport = field(default_factory=ThresholdReport)
    metrics: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    error: str | None = None
    teardown_error: str | None = None
    duration: float = 0.0

    def raise_for_status(self) -> None:
        """
        Raise if the run did not pass, for callers that prefer exceptions.

        Raises:
            SetupError: If the run could not execute.
            ThresholdViolation: If a threshold failed or aborted the run.
            TeardownError: If only teardown failed.
        """
        if not self.executed:
            raise SetupError(self.error or "setup failed")
        if self.aborted or not self.threshold_results.passed:
            raise ThresholdViolation(self.threshold_results.failed)
        if self.teardown_error is not None:
            raise TeardownError(self.teardown_error)


class LoadTest:
    """
    One configured test run.

    Args:
        options: Options mapping or an already parsed :class:`TestOptions`.
        default: Iteration function for scenarios without an ``exec`` name.
        setup: ``async def setup(vu)``; its return value becomes ``data``.
        teardown: ``async def teardown(vu, data)``.
        functions: Extra iteration functions by name, for scenarios that
            set ``exec``.
        handle_summary: ``handle_summary(summary) -> {target: content}``
            deciding where the summary is written.
        config: Configuration class; defaults to :func:`get_config`.
        transport: httpx transport override, used by tests.
        env: Environment exposed to callbacks as ``vu.env``.  Its
            ``BASE_URL`` is the target when the options set no ``baseUrl``.

    Raises:
        ConfigurationError: If the options are invalid, a scenario names a
            missing function, or a callback is not a coroutine function.
    """

    def __init__(
        self,
        options: Mapping[str, Any] | TestOptions | None = None,
        *,
        default: IterationFunction | None = None,
        setup: Callable[[VUContext], Any] | None = None,
        teardown: Callable[[VUContext, Any], Any] | None = None,
        functions: Mapping[str, IterationFunction] | None = None,
        handle_summary: SummaryHandler | None = None,
        config: type[Config] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.phase = Phase.INIT
        self.config = config or get_config()
        self.options = options if isinstance(options, TestOptions) else parse_options(options)

        self.functions: dict[str, IterationFunction] = dict(functions or {})
        if default is not None:
            self.functions.setdefault("default", default)
        missing = sorted(self.options.profile.exec_names - set(self.functions))
        if missing:
            raise ConfigurationError(f"No iteration function named {', '.join(missing)}")

        for name, callback in [*self.functions.items(), ("setup", setup), ("teardown", teardown)]:
            if callback is not None and not inspect.iscoroutinefunction(callback):
                raise ConfigurationError(f"{name} must be an async function")

        self.setup = setup
        self.teardown = teardown
        self.handle_summary = handle_summary
        self.transport = transport
        self.env = dict(env) if env is not None else dict(os.environ)
        self.base_url = self.options.base_url or self.env.get("BASE_URL") or self.config.BASE_URL

        self.sink = MetricSink(self.options.summary_trend_stats or self.config.SUMMARY_TREND_STATS)
        for threshold in self.options.thresholds:
            self.sink.register_submetric(threshold.metric)

        self.result: TestResult | None = None
        self.summary: dict[str, Any] | None = None
        self.outputs: Mapping[str, Any] | None = None

    def _enter(self, phase: Phase) -> None:
        logger.info("Test phase: %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def run(self) -> TestResult:
        """Run the test on a fresh event loop and return its result."""
        return asyncio.run(self.run_async())

    async def run_async(self) -> TestResult:
        if self.phase is not Phase.INIT:
            raise LoadEngineError("A LoadTest can only be run once")

        started = time.monotonic()
        self.sink.mark_start()
        client = build_async_client(
            timeout=self.config.HTTP_TIMEOUT,
            max_connections=self.config.MAX_CONNECTIONS,
            transport=self.transport,
        )
        async with client:
            http = HttpClient(self.sink, client, base_url=self.base_url)

            self._enter(Phase.SETUP)
            outcome = await self._setup(http)
            if isinstance(outcome, Err):
                logger.error("Setup failed, no virtual users will start: %s", outcome.message)
                self.sink.mark_end()
                result = TestResult(
                    passed=False,
                    status=TestStatus.SETUP_FAILED,
                    executed=False,
                    threshold_results=evaluate(self.options.thresholds, self.sink),
                    metrics=self.sink.snapshot_all(),
                    error=outcome.message,
                    duration=time.monotonic() - started,
                )
                return self._finish(result)

            data = outcome.value
            self._enter(Phase.RUNNING)
            report, metrics, aborted = await self._execute(http, data)

            self._enter(Phase.TEARDOWN)
            teardown = await self._teardown(http, data)

        self.sink.mark_end()
        teardown_error = teardown.message if isinstance(teardown, Err) else None
        if aborted:
            status = TestStatus.ABORTED_BY_THRESHOLD
        elif not report.passed:
            status = TestStatus.THRESHOLDS_FAILED
        elif teardown_error is not None:
            status = TestStatus.TEARDOWN_FAILED
        else:
            status = TestStatus.PASSED

        result = TestResult(
            passed=status is TestStatus.PASSED,
            status=status,
            executed=True,
            aborted=aborted,
            threshold_results=report,
            metrics=metrics,
            teardown_error=teardown_error,
            duration=time.monotonic() - started,
        )
        return self._finish(result)

    def _context(self, http: HttpClient, name: str) -> VUContext:
        return VUContext(0, name, http.with_tags(scenario=name), self.sink, self.env, {"scenario": name})

    async def _setup(self, http: HttpClient) -> Outcome:
        if self.setup is None:
            return await capture(_noop, error_class=SetupError)
        return await _bounded(
            capture(self.setup, self._context(http, "setup"), error_class=SetupError),
            self.config.SETUP_TIMEOUT,
            SetupError(f"setup timed out after {self.config.SETUP_TIMEOUT}s"),
        )

    async def _execute(
        self, http: HttpClient, data: Any
    ) -> tuple[ThresholdReport, dict[str, dict[str, Any]], bool]:
        """Run the load, then evaluate thresholds and snapshot metrics at the same instant."""
        scheduler = Scheduler(
            self.options.profile,
            self.functions,
            sink=self.sink,
            http=http,
            data=data,
            tick=self.config.SCHEDULER_TICK,
            graceful_stop=self.config.GRACEFUL_STOP,
            env=self.env,
        )
        monitor = ThresholdMonitor(
            self.options.thresholds,
            self.sink,
            on_abort=lambda breached: scheduler.abort("threshold breached: " + ", ".join(breached)),
            interval=self.config.THRESHOLD_POLL_INTERVAL,
        )
        monitor_task = asyncio.create_task(monitor.run(), name="threshold-monitor")
        try:
            await scheduler.run()
        finally:
            monitor_task.cancel()
            await asyncio.gather(monitor_task, return_exceptions=True)

        return evaluate(self.options.thresholds, self.sink), self.sink.snapshot_all(), scheduler.aborted

    async def _teardown(self, http: HttpClient, data: Any) -> Outcome:
        if self.teardown is None:
            return await capture(_noop, error_class=TeardownError)
        outcome = await _bounded(
            capture(self.teardown, self._context(http, "teardown"), data, error_class=TeardownError),
            self.config.TEARDOWN_TIMEOUT,
            TeardownError(f"teardown timed out after {self.config.TEARDOWN_TIMEOUT}s"),
        )
        if isinstance(outcome, Err):
            logger.error("Teardown failed: %s", outcome.message)
        return outcome

    def _finish(self, result: TestResult) -> TestResult:
        self.result = result
        self._enter(Phase.SUMMARIZED)
        logger.info("Test finished: %s", result.status.value)

        self.summary = build_summary(result)
        if self.handle_summary is not None:
            try:
                self.outputs = self.handle_summary(self.summary)
            except Exception:
                logger.exception("handle_summary failed")
        return result


async def _noop(*args: Any) -> None:
    return None


async def _bounded(awaitable: Any, timeout: float, error: LoadEngineError) -> Outcome:
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        return Err(error)
