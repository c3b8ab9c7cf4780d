"""
Unit tests for option parsing and YAML options files.
"""

from pathlib import Path

import pytest

import foundations
from load_engine.errors import ConfigurationError
from load_engine.options import load_options, parse_options, read_options_file
from load_engine.profile import ExecutorKind

pytestmark = pytest.mark.unit

SCENARIOS_YML = Path(foundations.__file__).with_name("scenarios.yml")


def test_parse_options_defaults():
    """Test that empty options are a single iteration without thresholds."""
    options = parse_options(None)
    assert options.thresholds == ()
    assert options.summary_trend_stats is None
    assert options.base_url is None
    assert options.profile.scenarios[0].iterations == 1


def test_parse_options_full():
    """Test that every known key is parsed into the options object."""
    # Act
    options = parse_options(
        {
            "vus": 2,
            "duration": "5s",
            "thresholds": {"http_req_failed": ["rate<0.01"]},
            "summaryTrendStats": ["avg", "p(99.9)", "count"],
            "baseUrl": "http://pizza.test",
        }
    )

    # Assert
    assert options.profile.scenarios[0].executor is ExecutorKind.CONSTANT_VUS
    assert options.thresholds[0].label == "http_req_failed: rate<0.01"
    assert options.summary_trend_stats == ("avg", "p(99.9)", "count")
    assert options.base_url == "http://pizza.test"


@pytest.mark.parametrize(
    "raw",
    [
        {"vu": 1},
        {"summaryTrendStats": "avg"},
        {"summaryTrendStats": ["mean"]},
        {"baseUrl": 3333},
        {"thresholds": {"http_req_failed": ["rate<<0.01"]}},
    ],
)
def test_invalid_options(raw):
    """Test that unknown keys and invalid values are rejected."""
    with pytest.raises(ConfigurationError):
        parse_options(raw)


def test_scenarios_yml_is_valid():
    """Test that the shipped scenarios file parses into both scenarios."""
    # Act
    options = load_options(SCENARIOS_YML)

    # Assert
    assert [s.name for s in options.profile.scenarios] == ["smoke", "stress"]
    assert options.profile.scenario("stress").start_time == 10
    assert options.profile.total_duration == 30
    assert {t.metric for t in options.thresholds} == {
        "http_req_failed",
        "http_req_duration",
        "quickpizza_ingredients",
        "checks",
    }


def test_read_empty_file_is_empty_mapping(tmp_path):
    """Test that an empty YAML file means default options."""
    path = tmp_path / "empty.yml"
    path.write_text("")
    assert read_options_file(path) == {}


@pytest.mark.parametrize(
    "content",
    ["- just\n- a list\n", "scenarios: [unclosed\n"],
)
def test_read_malformed_file(tmp_path, content):
    """Test that non-mapping or broken YAML is a configuration error."""
    # Arrange
    path = tmp_path / "options.yml"
    path.write_text(content)

    # Act / Assert
    with pytest.raises(ConfigurationError):
        read_options_file(path)


def test_read_missing_file(tmp_path):
    """Test that a missing options file is a configuration error."""
    with pytest.raises(ConfigurationError, match="Cannot read"):
        read_options_file(tmp_path / "missing.yml")
