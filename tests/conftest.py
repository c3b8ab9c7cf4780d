"""
Shared pytest fixtures for the load engine test suite.

Fixtures follow the Arrange-Act-Assert (AAA) pattern and give every test
a fresh metric sink, so no metric state leaks between tests.

Key Concepts Demonstrated:
- Fixture scopes (function for sinks, session for the live server)
- Deterministic HTTP with ``httpx.MockTransport``
- A real stub server on an ephemeral port for integration tests
"""

import os

import httpx
import pytest
from faker import Faker

# Set testing environment before importing the engine
os.environ["LOAD_ENGINE_ENV"] = "testing"

from load_engine.config import TestingConfig
from load_engine.metrics import MetricSink
from shared.live_server import live_server
from shared.quickpizza_stub import create_stub_app

fake = Faker()

PIZZA_BODY = {"pizza": {"name": "Margherita", "ingredients": ["a", "b"]}}


def quickpizza_handler(request: httpx.Request) -> httpx.Response:
    """
    Route mocked requests the way QuickPizza (and a bad network) would.

    ``/api/refused`` and ``/api/timeout`` raise the transport errors a
    real connection would.
    """
    path = request.url.path
    if path == "/":
        return httpx.Response(200, text="<h1>QuickPizza</h1>")
    if path == "/api/pizza":
        return httpx.Response(200, json=PIZZA_BODY)
    if path.startswith("/api/status/"):
        return httpx.Response(int(path.rsplit("/", 1)[-1]), json={})
    if path == "/api/not-json":
        return httpx.Response(200, text="definitely not json")
    if path == "/api/refused":
        raise httpx.ConnectError("Connection refused", request=request)
    if path == "/api/timeout":
        raise httpx.ReadTimeout("Read timed out", request=request)
    return httpx.Response(404, json={"error": "Not found"})


# -----------------------------------------------------------------------------
# Engine Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def sink():
    """Provide a fresh metric sink for each test."""
    return MetricSink()


@pytest.fixture
def config():
    """Provide the fast testing configuration class."""
    return TestingConfig


@pytest.fixture
def transport():
    """Provide a mock transport serving the QuickPizza routes above."""
    return httpx.MockTransport(quickpizza_handler)


@pytest.fixture
def pizza_name():
    """Generate a random pizza name for tests that don't care which one."""
    return f"{fake.color_name()} {fake.last_name()} Special"


# -----------------------------------------------------------------------------
# Live Server Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def quickpizza_url():
    """
    Start the stub QuickPizza app on a live socket for the whole session.

    Every pizza it recommends has exactly two ingredients, so the
    ingredients Trend has a predictable average.

    Yields:
        str: Base URL of the running server.
    """
    with live_server(create_stub_app(ingredients=("a", "b"))) as url:
        yield url
