import threading

import pytest

from pvz_metrics import CHECKS, ERRORS, HTTP_REQ_DURATION, MetricSink, Rate, Trend, percentile


class TestPercentile:
    def test_empty_series_is_zero(self):
        assert percentile([], 95) == 0.0

    def test_interpolates_between_samples(self):
        values = [float(v) for v in range(1, 101)]
        assert percentile(values, 50) == pytest.approx(50.5)
        assert percentile(values, 95) == pytest.approx(95.05)

    def test_single_sample(self):
        assert percentile([42.0], 99) == 42.0


class TestTrend:
    def test_aggregations(self):
        trend = Trend("latency")
        for value in (10, 20, 30, 40):
            trend.add(value)
        assert trend.count == 4
        assert trend.aggregate("avg") == 25.0
        assert trend.aggregate("min") == 10.0
        assert trend.aggregate("max") == 40.0
        assert trend.aggregate("med") == 25.0
        assert trend.aggregate("p", 100) == 40.0

    def test_unknown_aggregation_raises(self):
        with pytest.raises(ValueError):
            Trend("latency").aggregate("rate")


class TestRate:
    def test_rate_is_share_of_true_samples(self):
        rate = Rate("errors")
        for value in (True, False, False, False):
            rate.add(value)
        assert rate.rate == 0.25
        assert rate.passes == 1
        assert rate.fails == 3

    def test_empty_rate_is_zero(self):
        assert Rate("errors").rate == 0.0


class TestMetricSink:
    def test_builtin_series_exist(self):
        sink = MetricSink()
        assert sink.get(HTTP_REQ_DURATION) is not None
        assert sink.get(CHECKS) is not None
        assert sink.get(ERRORS) is None

    def test_series_are_created_lazily(self):
        sink = MetricSink()
        sink.add_rate(ERRORS, False)
        sink.add_trend("pvz_list_latency", 12.5)
        assert sink.get(ERRORS).count == 1
        assert sink.get("pvz_list_latency").values == [12.5]

    def test_kind_mismatch_is_rejected(self):
        sink = MetricSink()
        sink.add_trend("latency", 1.0)
        with pytest.raises(ValueError):
            sink.add_rate("latency", True)

    def test_check_records_into_checks_rate(self):
        sink = MetricSink()
        assert sink.check("status is 200", True) is True
        assert sink.check("status is 200", False) is False
        sink.check("has items", True)
        assert sink.get(CHECKS).rate == pytest.approx(2 / 3)
        assert sink.check_results() == {"status is 200": (1, 1), "has items": (1, 0)}

    def test_counter_rejects_negative_values(self):
        sink = MetricSink()
        with pytest.raises(ValueError):
            sink.add_counter("iterations", -1)

    def test_concurrent_writers_do_not_lose_samples(self):
        sink = MetricSink()

        def writer():
            for _ in range(1000):
                sink.add_rate(ERRORS, False)
                sink.add_trend(HTTP_REQ_DURATION, 1.0)

        threads = [threading.Thread(target=writer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sink.get(ERRORS).count == 8000
        assert sink.get(HTTP_REQ_DURATION).count == 8000

    def test_snapshot_contains_summaries(self):
        sink = MetricSink()
        sink.add_trend(HTTP_REQ_DURATION, 50)
        snapshot = sink.snapshot()
        assert snapshot[HTTP_REQ_DURATION]["p(95)"] == 50
        assert snapshot[CHECKS] == {"rate": 0.0, "passes": 0, "fails": 0}
