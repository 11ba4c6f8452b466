"""Unit tests for metrics collection and Prometheus export."""

import threading

import pytest

from teamcall.metrics import Counter, Gauge, Histogram, MetricsCollector


class TestHistogram:
    """Test histogram metric for call durations."""

    def test_observe(self) -> None:
        hist = Histogram(name="test_duration", help="Test duration")

        hist.observe(5.0)
        hist.observe(45.0)
        hist.observe(4000.0)

        assert hist.count == 3
        assert hist.sum == pytest.approx(4050.0)
        counts = {b.le: b.count for b in hist.buckets}
        assert counts[10.0] == 1
        assert counts[60.0] == 2
        assert counts[7200.0] == 3
        assert counts[float("inf")] == 3

    def test_quantile_empty(self) -> None:
        assert Histogram(name="h", help="h").quantile(0.5) is None

    def test_quantile_interpolates(self) -> None:
        hist = Histogram(name="h", help="h")
        for _ in range(10):
            hist.observe(20.0)

        # All observations fall in the (10, 30] bucket
        p50 = hist.quantile(0.5)
        assert p50 is not None
        assert 10.0 <= p50 <= 30.0


class TestPrimitives:
    def test_counter(self) -> None:
        counter = Counter(name="c", help="c")
        counter.inc()
        counter.inc(2)
        assert counter.value == 3

    def test_gauge(self) -> None:
        gauge = Gauge(name="g", help="g")
        gauge.set(5)
        gauge.inc()
        gauge.dec(2)
        assert gauge.value == 4


class TestMetricsCollector:
    """Test the per-server collector."""

    def test_recording(self) -> None:
        metrics = MetricsCollector()

        metrics.record_connection_opened()
        metrics.record_connection_opened()
        metrics.record_connection_closed()
        metrics.record_event()
        metrics.record_event(error=True)
        metrics.record_call_created()
        metrics.record_join()
        metrics.record_leave()
        metrics.record_leave(disconnected=True)
        metrics.record_call_ended(120.0)
        metrics.record_calls_expired(2)
        metrics.update_state(calls=3, participants=7, dropped_sends=4)

        summary = metrics.get_summary()
        assert summary["connections_total"] == 2
        assert summary["connections_active"] == 1
        assert summary["events_total"] == 2
        assert summary["event_errors_total"] == 1
        assert summary["calls_created_total"] == 1
        assert summary["call_joins_total"] == 1
        assert summary["call_leaves_total"] == 1
        assert summary["disconnect_cleanups_total"] == 1
        assert summary["calls_ended_total"] == 1
        assert summary["calls_expired_total"] == 2
        assert summary["calls_active"] == 3
        assert summary["participants_active"] == 7
        assert summary["dropped_sends_total"] == 4
        assert summary["call_duration_p50_s"] is not None

    def test_collectors_are_independent(self) -> None:
        first = MetricsCollector()
        second = MetricsCollector()

        first.record_call_created()

        assert second.get_summary()["calls_created_total"] == 0

    def test_export_prometheus(self) -> None:
        metrics = MetricsCollector()
        metrics.record_call_created()
        metrics.record_call_ended(42.0)

        text = metrics.export_prometheus()

        assert "# HELP teamcall_calls_created_total Calls created" in text
        assert "# TYPE teamcall_calls_created_total counter" in text
        assert "teamcall_calls_created_total 1.0" in text
        assert "# TYPE teamcall_calls_active gauge" in text
        assert 'teamcall_call_duration_seconds_bucket{le="60.0"} 1' in text
        assert 'teamcall_call_duration_seconds_bucket{le="+Inf"} 1' in text
        assert "teamcall_call_duration_seconds_count 1" in text
        assert text.endswith("\n")

    def test_custom_prefix(self) -> None:
        text = MetricsCollector(prefix="edge_").export_prometheus()
        assert "edge_events_total" in text
        assert "teamcall_" not in text

    def test_thread_safety(self) -> None:
        metrics = MetricsCollector()

        def worker() -> None:
            for _ in range(1000):
                metrics.record_event()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert metrics.get_summary()["events_total"] == 4000
