"""
Unit tests for the Metric Sink.

Key Concepts Demonstrated:
- Testing each metric kind's aggregates in isolation
- Nearest-rank percentile edge cases
- Tag-filtered sub-metrics
- Concurrent writers hammering one sink from many threads
"""

import threading

import pytest

from load_engine.errors import ConfigurationError, MetricKindError
from load_engine.metrics import (
    MetricKind,
    MetricSink,
    canonical_selector,
    parse_metric_selector,
    percentile,
)

pytestmark = pytest.mark.unit


class TestMetricKinds:
    """Aggregates of Counter, Gauge, Rate and Trend metrics."""

    def test_counter_sums_values(self, sink):
        """Test that a counter accumulates every added value."""
        # Arrange
        pizzas = sink.counter("quickpizza_number_of_pizzas")

        # Act
        pizzas.add(1)
        pizzas.add(2)

        # Assert
        snapshot = sink.snapshot("quickpizza_number_of_pizzas")
        assert snapshot["kind"] == "counter"
        assert snapshot["count"] == 3

    def test_counter_rejects_negative_values(self, sink):
        """Test that a counter cannot be decremented and stays unchanged."""
        # Arrange
        pizzas = sink.counter("pizzas")
        pizzas.add(1)

        # Act / Assert
        with pytest.raises(ValueError):
            pizzas.add(-1)
        assert sink.get("pizzas").count == 1
        assert sink.snapshot("pizzas")["count"] == 1

    def test_gauge_keeps_last_min_and_max(self, sink):
        """Test that a gauge reports its latest value and the range it took."""
        # Arrange
        gauge = sink.gauge("vus")

        # Act
        for value in (3, 7, 1, 4):
            gauge.add(value)

        # Assert
        assert sink.snapshot("vus") == {"kind": "gauge", "value": 4, "min": 1, "max": 7}

    def test_rate_counts_truthy_fraction(self, sink):
        """Test that a rate reports the fraction of truthy samples."""
        # Arrange
        failed = sink.rate("http_req_failed")

        # Act
        for value in (True, False, False, False):
            failed.add(value)

        # Assert
        snapshot = sink.snapshot("http_req_failed")
        assert snapshot["rate"] == pytest.approx(0.25)
        assert snapshot["passes"] == 1
        assert snapshot["fails"] == 3

    def test_trend_aggregates(self, sink):
        """Test that a trend reports avg, min, max, median and percentiles."""
        # Arrange
        trend = sink.trend("http_req_duration", is_time=True)

        # Act
        for value in range(1, 101):
            trend.add(value)

        # Assert
        snapshot = sink.snapshot("http_req_duration")
        assert snapshot["contains"] == "time"
        assert snapshot["avg"] == pytest.approx(50.5)
        assert snapshot["min"] == 1
        assert snapshot["max"] == 100
        assert snapshot["med"] == 50
        assert snapshot["p(90)"] == 90
        assert snapshot["p(95)"] == 95
        assert snapshot["count"] == 100

    def test_trend_percentiles_are_monotonic(self, sink):
        """Test that p99 >= p95 >= p90 >= avg for an evenly spread series."""
        # Arrange
        trend = sink.trend("latency")
        for value in range(1000):
            trend.add(value * 1.5)
        metric = sink.get("latency")

        # Act
        p99, p95, p90, avg = (
            metric.aggregate(stat, sink.elapsed) for stat in ("p(99)", "p(95)", "p(90)", "avg")
        )

        # Assert
        assert p99 >= p95 >= p90 >= avg

    def test_trend_without_time_is_default(self, sink):
        """Test that a plain trend is reported as holding default values."""
        # Arrange
        sink.trend("quickpizza_ingredients").add(2)

        # Act
        snapshot = sink.snapshot("quickpizza_ingredients")

        # Assert
        assert snapshot["contains"] == "default"

    def test_configured_trend_stats(self):
        """Test that the sink reports only the configured trend stats."""
        # Arrange
        sink = MetricSink(trend_stats=("min", "p(99)"))
        sink.trend("t").add(5)

        # Act
        snapshot = sink.snapshot("t")

        # Assert
        assert set(snapshot) == {"kind", "contains", "min", "p(99)", "count"}


class TestPercentile:
    """Nearest-rank percentile."""

    @pytest.mark.parametrize(
        "p, expected",
        [(0, 10), (25, 10), (50, 20), (75, 30), (90, 40), (100, 40)],
    )
    def test_nearest_rank(self, p, expected):
        """Test that the rank is ceil(p/100 * n) - 1, clamped to the series."""
        assert percentile([10, 20, 30, 40], p) == expected

    def test_single_value(self):
        """Test that every percentile of one value is that value."""
        assert percentile([7.5], 99) == 7.5

    def test_empty_series_raises(self):
        """Test that asking for a percentile of nothing is an error."""
        with pytest.raises(ValueError):
            percentile([], 95)

    def test_out_of_range_raises(self):
        """Test that percentiles above 100 are rejected."""
        with pytest.raises(ValueError):
            percentile([1, 2, 3], 101)


class TestRegistration:
    """Metric names, kinds and selectors."""

    def test_kind_mismatch_raises(self, sink):
        """Test that re-using a name with another kind is rejected."""
        # Arrange
        sink.counter("pizzas")

        # Act / Assert
        with pytest.raises(MetricKindError):
            sink.trend("pizzas")

    @pytest.mark.parametrize("name", ["", "1pizzas", "pizza-count", "a" * 129, "spaced name"])
    def test_invalid_names_rejected(self, sink, name):
        """Test that illegal metric names raise a configuration error."""
        with pytest.raises(ConfigurationError):
            sink.record(MetricKind.COUNTER, name, 1)

    def test_snapshot_of_unknown_metric_is_none(self, sink):
        """Test that a never-recorded metric has no snapshot."""
        assert sink.snapshot("never_recorded") is None

    def test_snapshot_all_skips_empty_metrics(self, sink):
        """Test that registered but empty metrics are left out of snapshots."""
        # Arrange
        sink.counter("registered_only")
        sink.counter("recorded").add(1)

        # Act
        snapshots = sink.snapshot_all()

        # Assert
        assert list(snapshots) == ["recorded"]

    def test_record_returns_immutable_sample(self, sink):
        """Test that recorded samples carry stringified, read-only tags."""
        # Act
        sample = sink.record("counter", "http_reqs", 1, {"status": 200, "expected_response": True})

        # Assert
        assert sample.tags == {"status": "200", "expected_response": "true"}
        with pytest.raises(TypeError):
            sample.tags["status"] = "500"


class TestSelectors:
    """Parsing ``name{tag:value}`` selectors."""

    @pytest.mark.parametrize(
        "selector, expected",
        [
            ("http_reqs", ("http_reqs", {})),
            ("http_req_duration{status:200}", ("http_req_duration", {"status": "200"})),
            (
                "http_req_duration{ status:200 , method:GET }",
                ("http_req_duration", {"status": "200", "method": "GET"}),
            ),
            ("checks{check:Pizza has a name}", ("checks", {"check": "Pizza has a name"})),
        ],
    )
    def test_parse_selector(self, selector, expected):
        """Test that selectors split into a name and a tag filter."""
        assert parse_metric_selector(selector) == expected

    @pytest.mark.parametrize(
        "selector",
        ["http_reqs{", "http_reqs{status}", "http_reqs{}", "{status:200}", "bad-name{a:b}"],
    )
    def test_malformed_selector(self, selector):
        """Test that malformed selectors raise a configuration error."""
        with pytest.raises(ConfigurationError):
            parse_metric_selector(selector)

    def test_canonical_selector_sorts_tags(self):
        """Test that equivalent filters render to the same key."""
        assert canonical_selector("m", {"b": "2", "a": "1"}) == "m{a:1,b:2}"


class TestSubmetrics:
    """Tag-filtered sub-metrics."""

    def test_submetric_registered_before_parent(self, sink):
        """Test that a sub-metric registered early sees only matching samples."""
        # Arrange
        sink.register_submetric("http_req_duration{status:200}")

        # Act
        sink.record(MetricKind.TREND, "http_req_duration", 10, {"status": 200}, is_time=True)
        sink.record(MetricKind.TREND, "http_req_duration", 90, {"status": 500}, is_time=True)

        # Assert
        assert sink.snapshot("http_req_duration")["count"] == 2
        submetric = sink.snapshot("http_req_duration{status:200}")
        assert submetric["count"] == 1
        assert submetric["max"] == 10
        assert submetric["contains"] == "time"

    def test_submetric_registered_after_parent(self, sink):
        """Test that a sub-metric of an existing metric counts later samples."""
        # Arrange
        sink.record(MetricKind.COUNTER, "http_reqs", 1, {"method": "GET"})
        sink.register_submetric("http_reqs{method:POST}")

        # Act
        sink.record(MetricKind.COUNTER, "http_reqs", 1, {"method": "POST"})
        sink.record(MetricKind.COUNTER, "http_reqs", 1, {"method": "GET"})

        # Assert
        assert sink.snapshot("http_reqs")["count"] == 3
        assert sink.snapshot("http_reqs{method:POST}")["count"] == 1

    def test_multi_tag_filter_needs_every_tag(self, sink):
        """Test that a sample must match every tag of the filter."""
        # Arrange
        sink.register_submetric("http_reqs{status:200,method:GET}")

        # Act
        sink.record(MetricKind.COUNTER, "http_reqs", 1, {"method": "GET", "status": "200"})
        sink.record(MetricKind.COUNTER, "http_reqs", 1, {"method": "GET", "status": "404"})

        # Assert
        assert sink.snapshot("http_reqs{method:GET,status:200}")["count"] == 1


def test_concurrent_writers_never_lose_samples(sink):
    """Test that many threads adding at once are all counted."""
    # Arrange
    writers, per_writer = 8, 1000
    trend = sink.trend("iteration_duration", is_time=True)

    def write():
        for value in range(per_writer):
            sink.record(MetricKind.COUNTER, "iterations", 1)
            trend.add(value)

    threads = [threading.Thread(target=write) for _ in range(writers)]

    # Act
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # Assert
    assert sink.snapshot("iterations")["count"] == writers * per_writer
    assert sink.snapshot("iteration_duration")["count"] == writers * per_writer
