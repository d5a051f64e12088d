"""Tests for read path instrumentation."""

import logging
import time

from lp_portfolio_tracker.monitoring import PerformanceMonitor, safe_record, safe_timer


class BrokenSink:
    """Sink whose every call raises."""

    def start_timer(self, name):
        raise RuntimeError("metrics backend down")

    def record_metric(self, name, value):
        raise RuntimeError("metrics backend down")


class BrokenStopSink:
    """Sink whose timers fail on stop."""

    def start_timer(self, name):
        def stop():
            raise RuntimeError("metrics backend down")

        return stop

    def record_metric(self, name, value):
        pass


def test_record_and_stats():
    """Test recording samples and computing stats."""
    monitor = PerformanceMonitor()
    for value in (10, 20, 30):
        monitor.record_metric("api-call", value)

    stats = monitor.get_stats("api-call")

    assert stats["count"] == 3
    assert stats["avg"] == 20
    assert stats["min"] == 10
    assert stats["max"] == 30
    assert stats["recent"] == [10.0, 20.0, 30.0]


def test_stats_for_unknown_metric():
    """Test stats for a metric with no samples."""
    assert PerformanceMonitor().get_stats("nothing")["count"] == 0


def test_sample_window():
    """Test that only the most recent samples are kept."""
    monitor = PerformanceMonitor(max_samples=50)
    for value in range(60):
        monitor.record_metric("cache-hit", value)

    stats = monitor.get_stats("cache-hit")

    assert stats["count"] == 50
    assert stats["min"] == 10


def test_timer_records_milliseconds():
    """Test that timers record elapsed milliseconds."""
    monitor = PerformanceMonitor()
    stop = monitor.start_timer("remote-cache-read")
    time.sleep(0.01)
    stop()

    stats = monitor.get_stats("remote-cache-read")
    assert stats["count"] == 1
    assert stats["avg"] >= 10


def test_slow_operation_warning(caplog):
    """Test that slow operations are logged."""
    monitor = PerformanceMonitor(slow_threshold_ms=0)

    with caplog.at_level(logging.WARNING, logger="lp_portfolio_tracker.monitoring.performance"):
        stop = monitor.start_timer("portfolio-fetch-total")
        time.sleep(0.001)
        stop()

    assert "Slow operation: portfolio-fetch-total" in caplog.text


def test_disabled_monitor_records_nothing():
    """Test that a disabled monitor drops samples."""
    monitor = PerformanceMonitor(enabled=False)
    monitor.record_metric("api-call", 1)
    monitor.start_timer("api-call")()

    assert monitor.get_stats() == {}

    monitor.set_enabled(True)
    monitor.record_metric("api-call", 1)
    assert monitor.count("api-call") == 1


def test_check_targets():
    """Test comparing averages against latency targets."""
    monitor = PerformanceMonitor()
    monitor.record_metric("remote-cache-read", 20)
    monitor.record_metric("portfolio-fetch-total", 900)

    targets = monitor.check_targets()

    assert targets["remote-cache-read"]["passed"]
    assert not targets["portfolio-fetch-total"]["passed"]
    assert "api-call" not in targets


def test_generate_report_and_clear():
    """Test the report and clearing samples."""
    monitor = PerformanceMonitor()
    monitor.record_metric("api-call", 100)

    report = monitor.generate_report()
    assert report["stats"]["api-call"]["count"] == 1
    assert report["targets"]["api-call"]["passed"]

    monitor.clear()
    assert monitor.get_stats() == {}


def test_safe_helpers_never_raise():
    """Test that a failing sink never propagates errors."""
    safe_record(BrokenSink(), "cache-hit")
    safe_timer(BrokenSink(), "api-call")()
    safe_timer(BrokenStopSink(), "api-call")()
