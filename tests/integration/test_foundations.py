"""
Integration tests running each foundations script against the live stub.

Each script keeps its own iteration code, callbacks and thresholds; only
the load profile is shrunk to fractions of a second and the think time
cut down through ``THINK_TIME``.
"""

import json
import logging

import pytest

import foundations.checks_with_thresholds as checks_script
import foundations.lifecycle as lifecycle_script
import foundations.metrics as metrics_script
import foundations.scenarios as scenarios_script
import foundations.stages as stages_script
import foundations.thresholds as thresholds_script
from load_engine.config import TestingConfig
from load_engine.runner import EXIT_PASS, EXIT_SCRIPT_ERROR, EXIT_THRESHOLD_BREACH, build_test, run_script
from shared.live_server import live_server, unused_port
from shared.quickpizza_stub import create_stub_app

pytestmark = pytest.mark.integration

SHORT_RAMP = {
    "stages": [
        {"duration": "0.3s", "target": 2},
        {"duration": "0.1s", "target": 0},
    ]
}

SHORT_SCENARIOS = {
    "scenarios": {
        "smoke": {"exec": "get_pizza", "executor": "constant-vus", "vus": 1, "duration": "0.2s"},
        "stress": {
            "exec": "get_pizza",
            "executor": "ramping-vus",
            "startTime": "0.2s",
            "stages": [{"duration": "0.2s", "target": 2}, {"duration": "0.1s", "target": 0}],
        },
    }
}


def env_for(url):
    return {"BASE_URL": url, "THINK_TIME": "0.05"}


@pytest.mark.parametrize(
    "script",
    [stages_script, lifecycle_script, metrics_script, thresholds_script, checks_script],
    ids=lambda module: module.__name__.rsplit(".", 1)[-1],
)
def test_script_passes_against_healthy_service(quickpizza_url, script, capsys):
    """Test that every ramping foundations script passes against a healthy stub."""
    # Act
    code = run_script(script, SHORT_RAMP, config=TestingConfig, env=env_for(quickpizza_url))

    # Assert
    assert code == EXIT_PASS
    assert "Overall: PASS (passed)" in capsys.readouterr().out


def test_metrics_script_records_custom_metrics(quickpizza_url):
    """Test that the custom pizza Counter and ingredients Trend are recorded."""
    # Arrange
    test = build_test(metrics_script, SHORT_RAMP, config=TestingConfig, env=env_for(quickpizza_url))

    # Act
    result = test.run()

    # Assert
    assert result.passed
    pizzas = result.metrics["quickpizza_number_of_pizzas"]["count"]
    assert pizzas == result.metrics["http_reqs"]["count"] - 1
    assert result.metrics["quickpizza_ingredients"]["avg"] == 2
    assert result.metrics["checks"]["rate"] == 1


def test_scenarios_script_writes_summary_file(quickpizza_url, tmp_path, monkeypatch, capsys):
    """Test that the scenarios script runs both scenarios and writes summary.json."""
    # Arrange
    monkeypatch.chdir(tmp_path)

    # Act
    code = run_script(scenarios_script, SHORT_SCENARIOS, config=TestingConfig, env=env_for(quickpizza_url))

    # Assert
    assert code == EXIT_PASS
    summary = json.loads((tmp_path / "summary.json").read_text())
    assert summary["state"]["status"] == "passed"
    assert summary["metrics"]["checks"]["thresholds"] == {"rate > 0.95": {"ok": True}}
    assert "Overall: PASS (passed)" in capsys.readouterr().out


def test_failing_pizza_api_breaches_thresholds():
    """Test that a failing pizza endpoint exits with the threshold breach code."""
    with live_server(create_stub_app(pizza_status=500)) as url:
        code = run_script(thresholds_script, SHORT_RAMP, config=TestingConfig, env=env_for(url))

    assert code == EXIT_THRESHOLD_BREACH


def test_unavailable_service_exits_with_script_error():
    """Test that a failing setup availability check exits 2, distinct from a threshold breach."""
    with live_server(create_stub_app(home_status=503)) as url:
        code = run_script(lifecycle_script, SHORT_RAMP, config=TestingConfig, env=env_for(url))

    assert code == EXIT_SCRIPT_ERROR


def test_base_url_option_wins_over_environment(quickpizza_url):
    """Test that a baseUrl option redirects every script request, setup included."""
    # Arrange
    options = {**SHORT_RAMP, "baseUrl": quickpizza_url}
    env = env_for(f"http://127.0.0.1:{unused_port()}")

    # Act
    code = run_script(metrics_script, options, config=TestingConfig, env=env)

    # Assert
    assert code == EXIT_PASS


@pytest.mark.parametrize(
    ("script", "options", "message"),
    [
        (checks_script, SHORT_RAMP, "checks threshold gates business logic"),
        (scenarios_script, SHORT_SCENARIOS, "results include both smoke and stress"),
    ],
    ids=["checks_with_thresholds", "scenarios"],
)
def test_teardown_logs_completion(quickpizza_url, tmp_path, monkeypatch, caplog, script, options, message):
    """Test that the script's teardown reports completion in the log."""
    # Arrange
    monkeypatch.chdir(tmp_path)
    test = build_test(script, options, config=TestingConfig, env=env_for(quickpizza_url))

    # Act
    with caplog.at_level(logging.INFO, logger=script.__name__):
        result = test.run()

    # Assert
    assert result.passed
    assert message in caplog.text
