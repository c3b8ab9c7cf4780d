"""
Unit tests for the Virtual User Scheduler.

Profiles here are scaled down to fractions of a second and requests go
through ``httpx.MockTransport``, so each test runs the real scheduler on
a real event loop without touching the network.

Key Concepts Demonstrated:
- Observing concurrency from inside iteration functions
- Cooperative retirement versus hard cancellation
- Early abort while later scenarios are still waiting to start
"""

import asyncio
from collections import defaultdict

import pytest

from load_engine.http import HttpClient, build_async_client
from load_engine.profile import parse_load_profile
from load_engine.scheduler import Scheduler

pytestmark = pytest.mark.unit

BASE_URL = "http://quickpizza.test"


async def run_scheduler(sink, transport, options, functions, *, data=None, graceful_stop=1.0):
    """Run *options* to completion and return the scheduler."""
    async with build_async_client(timeout=2, max_connections=10, transport=transport) as client:
        scheduler = Scheduler(
            parse_load_profile(options),
            functions,
            sink=sink,
            http=HttpClient(sink, client, base_url=BASE_URL),
            data=data,
            tick=0.01,
            graceful_stop=graceful_stop,
        )
        await scheduler.run()
    return scheduler


def count(sink, name):
    snapshot = sink.snapshot(name)
    return 0 if snapshot is None else snapshot["count"]


@pytest.mark.asyncio
async def test_constant_vus_never_overlaps_iterations_of_one_user(sink, transport):
    """Test that constant-vus holds the user count and each user runs serially."""
    # Arrange
    running = defaultdict(int)
    overlaps = []
    seen_ids = set()

    async def default(vu, data):
        seen_ids.add(vu.vu_id)
        running[vu.vu_id] += 1
        if running[vu.vu_id] > 1:
            overlaps.append(vu.vu_id)
        await vu.http.get("/api/pizza")
        await vu.sleep(0.01)
        running[vu.vu_id] -= 1

    # Act
    await run_scheduler(sink, transport, {"vus": 3, "duration": "0.3s"}, {"default": default})

    # Assert
    assert overlaps == []
    assert seen_ids == {1, 2, 3}
    assert sink.snapshot("vus_max")["max"] == 3
    assert sink.snapshot("vus")["value"] == 0
    assert count(sink, "iterations") == count(sink, "http_reqs")
    assert count(sink, "iterations") >= 3


@pytest.mark.asyncio
async def test_per_vu_iterations_runs_exact_count(sink, transport):
    """Test that every user runs exactly its iteration budget."""
    # Arrange
    per_user = defaultdict(int)

    async def default(vu, data):
        per_user[vu.vu_id] += 1
        await vu.sleep(0)

    # Act
    await run_scheduler(sink, transport, {"vus": 2, "iterations": 3}, {"default": default})

    # Assert
    assert dict(per_user) == {1: 3, 2: 3}
    assert count(sink, "iterations") == 6
    assert sink.snapshot("iteration_duration")["count"] == 6


@pytest.mark.asyncio
async def test_failing_iterations_are_counted_and_user_continues(sink, transport):
    """Test that an iteration error is recorded and the next iteration still runs."""
    # Arrange
    async def default(vu, data):
        await vu.sleep(0)
        if vu.iteration % 2 == 0:
            raise RuntimeError("pizza oven on fire")

    # Act
    await run_scheduler(sink, transport, {"vus": 1, "iterations": 4}, {"default": default})

    # Assert
    assert count(sink, "iterations") == 4
    assert count(sink, "iterations_failed") == 2


@pytest.mark.asyncio
async def test_setup_data_reaches_every_iteration(sink, transport):
    """Test that the data value is handed to iteration functions unchanged."""
    # Arrange
    received = []

    async def default(vu, data):
        received.append(data)
        await vu.sleep(0)

    # Act
    await run_scheduler(
        sink, transport, {"vus": 2, "iterations": 1}, {"default": default}, data={"token": "abc"}
    )

    # Assert
    assert received == [{"token": "abc"}, {"token": "abc"}]


@pytest.mark.asyncio
async def test_ramp_down_lets_iterations_finish(sink, transport):
    """Test that retired users complete the iteration they were running."""
    # Arrange
    started = []

    async def default(vu, data):
        started.append(vu.vu_id)
        await vu.sleep(0.05)

    options = {"stages": [{"duration": "0.1s", "target": 4}, {"duration": "0.1s", "target": 0}]}

    # Act
    await run_scheduler(sink, transport, options, {"default": default})

    # Assert
    assert len(started) == count(sink, "iterations")
    assert count(sink, "iterations_interrupted") == 0
    assert 3 <= sink.snapshot("vus_max")["max"] <= 4


@pytest.mark.asyncio
async def test_graceful_stop_overrun_interrupts_iteration(sink, transport):
    """Test that iterations still running after gracefulStop are cancelled and counted."""
    # Arrange
    async def default(vu, data):
        await vu.sleep(30)

    loop = asyncio.get_running_loop()
    started = loop.time()

    # Act
    await run_scheduler(
        sink, transport, {"vus": 2, "duration": "0.05s"}, {"default": default}, graceful_stop=0.05
    )

    # Assert
    assert loop.time() - started < 5
    assert count(sink, "iterations_interrupted") == 2
    assert count(sink, "iterations") == 0


@pytest.mark.asyncio
async def test_scenario_graceful_stop_overrides_default(sink, transport):
    """Test that a scenario's own gracefulStop wins over the run default."""
    # Arrange
    async def default(vu, data):
        await vu.sleep(0.1)

    options = {
        "scenarios": {
            "patient": {"executor": "constant-vus", "vus": 1, "duration": "0.02s", "gracefulStop": "2s"}
        }
    }

    # Act
    await run_scheduler(sink, transport, options, {"default": default}, graceful_stop=0)

    # Assert
    assert count(sink, "iterations") == 1
    assert count(sink, "iterations_interrupted") == 0


@pytest.mark.asyncio
async def test_start_offset_delays_scenario(sink, transport):
    """Test that a scenario's first iteration waits for its startTime."""
    # Arrange
    loop = asyncio.get_running_loop()
    first_iteration = {}
    started = loop.time()

    async def late(vu, data):
        first_iteration.setdefault("at", loop.time() - started)
        await vu.sleep(0)

    options = {
        "scenarios": {
            "late": {"executor": "per-vu-iterations", "exec": "late", "vus": 1, "iterations": 1, "startTime": "0.2s"}
        }
    }

    # Act
    await run_scheduler(sink, transport, options, {"late": late})

    # Assert
    assert first_iteration["at"] >= 0.2


@pytest.mark.asyncio
async def test_scenario_tags_reach_samples(sink, transport):
    """Test that samples are tagged with the scenario name and its tags."""
    # Arrange
    sink.register_submetric("http_reqs{scenario:smoke}")
    sink.register_submetric("iterations{kind:light}")

    async def default(vu, data):
        await vu.http.get("/")

    options = {
        "scenarios": {
            "smoke": {"executor": "per-vu-iterations", "vus": 1, "iterations": 2, "tags": {"kind": "light"}}
        }
    }

    # Act
    await run_scheduler(sink, transport, options, {"default": default})

    # Assert
    assert count(sink, "http_reqs{scenario:smoke}") == 2
    assert count(sink, "iterations{kind:light}") == 2


@pytest.mark.asyncio
async def test_midpoint_user_count_follows_ramp(sink, transport):
    """Test that half-way through a 0 -> 10 ramp about five users are active."""
    # Arrange
    async def default(vu, data):
        await vu.sleep(0.01)

    async with build_async_client(timeout=2, max_connections=10, transport=transport) as client:
        scheduler = Scheduler(
            parse_load_profile({"stages": [{"duration": "1s", "target": 10}]}),
            {"default": default},
            sink=sink,
            http=HttpClient(sink, client, base_url=BASE_URL),
            tick=0.01,
            graceful_stop=1.0,
        )
        run = asyncio.create_task(scheduler.run())

        # Act
        await asyncio.sleep(0.5)
        midpoint = scheduler.active_vus
        await run

    # Assert
    assert abs(midpoint - 5) <= 1


@pytest.mark.asyncio
async def test_abort_cancels_users_and_skips_pending_scenarios(sink, transport):
    """Test that abort stops running users and never starts later scenarios."""
    # Arrange
    late_calls = []

    async def busy(vu, data):
        await vu.sleep(30)

    async def late(vu, data):
        late_calls.append(vu.vu_id)
        await vu.sleep(0)

    options = {
        "scenarios": {
            "busy": {"executor": "constant-vus", "exec": "busy", "vus": 2, "duration": "30s"},
            "late": {"executor": "constant-vus", "exec": "late", "vus": 1, "duration": "1s", "startTime": "10s"},
        }
    }

    async with build_async_client(timeout=2, max_connections=10, transport=transport) as client:
        scheduler = Scheduler(
            parse_load_profile(options),
            {"busy": busy, "late": late},
            sink=sink,
            http=HttpClient(sink, client, base_url=BASE_URL),
            tick=0.01,
            graceful_stop=30,
        )
        run = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.1)

        # Act
        scheduler.abort("threshold breached")
        await asyncio.wait_for(run, timeout=5)

    # Assert
    assert scheduler.aborted
    assert late_calls == []
    assert count(sink, "iterations_interrupted") == 2
    assert scheduler.active_vus == 0
