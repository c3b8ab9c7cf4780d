"""
Load Engine — Virtual User Scheduler.

Keeps the number of running virtual users (VUs) in line with each
scenario's load profile.  Every VU is an :class:`asyncio.Task` that runs
its scenario's iteration function in a loop; a VU only yields control at
an ``await`` (an HTTP call or a sleep), so iterations of different VUs
interleave but an iteration is never pre-empted by another one.

One :class:`ScenarioRunner` per scenario waits for the scenario's start
offset, then drives its executor:

- ``ramping-vus`` / ``constant-vus`` — a control loop re-reads the target
  every tick, spawning users when it rises and retiring the newest users
  when it falls.  A retired user finishes its current iteration first.
- ``per-vu-iterations`` — a fixed set of users, each running a fixed
  number of iterations, bounded by ``maxDuration``.

When a scenario ends, its users are given ``gracefulStop`` seconds to
finish the iteration in flight before they are cancelled.

Key Concepts Demonstrated:
- Cooperative cancellation with a "retiring" flag checked between iterations
- Hard cancellation via ``Task.cancel()`` for early abort and overrun
- Iteration errors caught at the VU boundary and turned into metrics
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from load_engine.checks import check
from load_engine.errors import Err, IterationError, capture
from load_engine.http import HttpClient
from load_engine.metrics import MetricKind, MetricSink
from load_engine.profile import ExecutorKind, LoadProfile, Scenario

logger = logging.getLogger(__name__)

IterationFunction = Callable[["VUContext", Any], Awaitable[Any]]


class VUContext:
    """
    Everything iteration code can reach, handed to each callback as ``vu``.

    Attributes:
        vu_id: 1-based id, unique across the run (``0`` for setup and
            teardown).
        iteration: Number of iterations this user has completed.
        scenario: Name of the scenario the user belongs to.
        http: Request facade tagged with this user's scenario.
        metrics: The run's metric sink, for custom metrics.
        env: Environment mapping of the run.
    """

    def __init__(
        self,
        vu_id: int,
        scenario: str,
        http: HttpClient,
        metrics: MetricSink,
        env: Mapping[str, str],
        tags: Mapping[str, Any] | None = None,
    ):
        self.vu_id = vu_id
        self.iteration = 0
        self.scenario = scenario
        self.http = http
        self.metrics = metrics
        self.env = env
        self.tags = dict(tags or {})

    def check(self, value: Any, assertions: Mapping[str, Callable[[Any], Any]], tags: Mapping[str, Any] | None = None) -> bool:
        return check(self.metrics, value, assertions, {**self.tags, **(tags or {})})

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def __repr__(self) -> str:
        return f"<VU {self.vu_id} {self.scenario} iteration={self.iteration}>"


class VirtualUser:
    """
    One logical concurrent worker.

    Iterations of one user never overlap.  ``retire()`` is cooperative:
    the user exits after its current iteration (and think time).
    """

    def __init__(
        self,
        context: VUContext,
        function: IterationFunction,
        data: Any,
        *,
        think_time: float = 0.0,
        iterations: int | None = None,
    ):
        self.context = context
        self.function = function
        self.data = data
        self.think_time = think_time
        self.iterations = iterations
        self.retiring = False
        self.in_iteration = False
        self.task: asyncio.Task | None = None

    @property
    def vu_id(self) -> int:
        return self.context.vu_id

    def retire(self) -> None:
        self.retiring = True

    def _has_work(self) -> bool:
        if self.retiring:
            return False
        return self.iterations is None or self.context.iteration < self.iterations

    async def run(self) -> None:
        context = self.context
        sink = context.metrics
        tags = context.tags
        try:
            while self._has_work():
                self.in_iteration = True
                started = time.perf_counter()
                outcome = await capture(self.function, context, self.data, error_class=IterationError)
                duration = (time.perf_counter() - started) * 1000.0
                self.in_iteration = False

                context.iteration += 1
                sink.record(MetricKind.COUNTER, "iterations", 1, tags)
                sink.record(MetricKind.TREND, "iteration_duration", duration, tags, is_time=True)
                if isinstance(outcome, Err):
                    sink.record(MetricKind.COUNTER, "iterations_failed", 1, tags)
                    logger.warning(
                        "VU %d (%s) iteration %d failed: %s",
                        context.vu_id,
                        context.scenario,
                        context.iteration,
                        outcome.message,
                    )

                # Always yield between iterations, even for code that never awaits.
                await asyncio.sleep(self.think_time)
        except asyncio.CancelledError:
            if self.in_iteration:
                sink.record(MetricKind.COUNTER, "iterations_interrupted", 1, tags)
                logger.debug("VU %d (%s) interrupted mid-iteration", context.vu_id, context.scenario)
            raise


class ScenarioRunner:
    """Drives the executor of one scenario."""

    def __init__(self, scheduler: Scheduler, scenario: Scenario, function: IterationFunction):
        self.scheduler = scheduler
        self.scenario = scenario
        self.function = function
        self.users: list[VirtualUser] = []
        self.retired: list[VirtualUser] = []

    @property
    def graceful_stop(self) -> float:
        if self.scenario.graceful_stop is not None:
            return self.scenario.graceful_stop
        return self.scheduler.graceful_stop

    def _tasks(self) -> list[asyncio.Task]:
        return [user.task for user in self.users + self.retired if user.task is not None and not user.task.done()]

    def _spawn(self, iterations: int | None = None) -> VirtualUser:
        user = self.scheduler.spawn(self.scenario, self.function, iterations)
        self.users.append(user)
        return user

    def scale_to(self, target: int) -> None:
        """Spawn or retire users until *target* are active."""
        while len(self.users) < target:
            self._spawn()
        while len(self.users) > target:
            # newest first
            user = self.users.pop()
            user.retire()
            self.retired.append(user)

    async def run(self) -> None:
        scenario = self.scenario
        if scenario.start_time > 0:
            await asyncio.sleep(scenario.start_time)
        logger.info("Scenario %s started (%s)", scenario.name, scenario.executor.value)

        if scenario.executor is ExecutorKind.PER_VU_ITERATIONS:
            await self._run_per_vu_iterations()
        else:
            await self._run_controlled()

        await self._stop()
        logger.info("Scenario %s finished", scenario.name)

    async def _run_controlled(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            elapsed = loop.time() - started
            if elapsed >= self.scenario.scheduled_duration:
                break
            self.scale_to(self.scenario.target_vus(elapsed))
            await asyncio.sleep(self.scheduler.tick)

    async def _run_per_vu_iterations(self) -> None:
        for _ in range(self.scenario.vus):
            self._spawn(self.scenario.iterations)
        tasks = self._tasks()
        if tasks:
            await asyncio.wait(tasks, timeout=self.scenario.max_duration)

    async def _stop(self) -> None:
        for user in self.users:
            user.retire()
        self.retired.extend(self.users)
        self.users = []

        tasks = self._tasks()
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self.graceful_stop)
        if pending:
            logger.warning(
                "Scenario %s: cancelling %d user(s) still running after gracefulStop",
                self.scenario.name,
                len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


class Scheduler:
    """
    Runs every scenario of a :class:`LoadProfile` concurrently.

    Args:
        profile: Validated load profile.
        functions: Iteration functions by name (``scenario.exec_name``).
        sink: Run-wide metric sink.
        http: Base request facade; each user gets a copy tagged with its
            scenario.
        data: Value returned by ``setup``, passed to every iteration.
        tick: Seconds between target re-evaluations.
        graceful_stop: Default seconds users may overrun a scenario's end.
        env: Environment mapping exposed as ``vu.env``.
    """

    def __init__(
        self,
        profile: LoadProfile,
        functions: Mapping[str, IterationFunction],
        *,
        sink: MetricSink,
        http: HttpClient,
        data: Any = None,
        tick: float = 0.1,
        graceful_stop: float = 30.0,
        env: Mapping[str, str] | None = None,
    ):
        self.profile = profile
        self.functions = functions
        self.sink = sink
        self.http = http
        self.data = data
        self.tick = tick
        self.graceful_stop = graceful_stop
        self.env = env or {}
        self.aborted = False
        self.runners: list[ScenarioRunner] = []
        self._runner_tasks: list[asyncio.Task] = []
        self._user_tasks: set[asyncio.Task] = set()
        self._next_vu_id = 1
        self._active = 0
        self._peak = 0

    @property
    def active_vus(self) -> int:
        return self._active

    def spawn(self, scenario: Scenario, function: IterationFunction, iterations: int | None = None) -> VirtualUser:
        tags = {**scenario.tags, "scenario": scenario.name}
        context = VUContext(
            self._next_vu_id,
            scenario.name,
            self.http.with_tags(**tags),
            self.sink,
            self.env,
            tags,
        )
        self._next_vu_id += 1

        user = VirtualUser(
            context,
            function,
            self.data,
            think_time=scenario.think_time,
            iterations=iterations,
        )
        user.task = asyncio.create_task(user.run(), name=f"vu-{context.vu_id}")
        self._user_tasks.add(user.task)
        user.task.add_done_callback(self._user_finished)

        self._active += 1
        if self._active > self._peak:
            self._peak = self._active
            self.sink.record(MetricKind.GAUGE, "vus_max", self._peak)
        self.sink.record(MetricKind.GAUGE, "vus", self._active)
        return user

    def _user_finished(self, task: asyncio.Task) -> None:
        self._user_tasks.discard(task)
        self._active -= 1
        self.sink.record(MetricKind.GAUGE, "vus", self._active)
        if not task.cancelled() and task.exception() is not None:
            logger.error("VU task %s crashed", task.get_name(), exc_info=task.exception())

    async def run(self) -> None:
        """Run every scenario to completion, or until :meth:`abort`."""
        self.sink.record(MetricKind.GAUGE, "vus", 0)
        self.runners = [
            ScenarioRunner(self, scenario, self.functions[scenario.exec_name])
            for scenario in self.profile.scenarios
        ]
        self._runner_tasks = [
            asyncio.create_task(runner.run(), name=f"scenario-{runner.scenario.name}")
            for runner in self.runners
        ]
        await asyncio.wait(self._runner_tasks)

        if self._user_tasks:
            leftovers = list(self._user_tasks)
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)

        for task in self._runner_tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    def abort(self, reason: str) -> None:
        """
        Stop the run early.

        Every user is cancelled at its next suspension point and scenarios
        that have not started yet are skipped.
        """
        if self.aborted:
            return
        self.aborted = True
        logger.warning("Aborting run: %s", reason)
        for task in self._runner_tasks:
            task.cancel()
        for task in list(self._user_tasks):
            task.cancel()
