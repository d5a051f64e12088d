"""Instrumentation for the portfolio read path."""

from lp_portfolio_tracker.monitoring.performance import (
    MetricsSink,
    PerformanceMonitor,
    StopTimer,
    safe_record,
    safe_timer,
)

__all__ = [
    "MetricsSink",
    "PerformanceMonitor",
    "StopTimer",
    "safe_record",
    "safe_timer",
]
