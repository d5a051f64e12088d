"""In-process timers and counters for read path stages."""

import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

StopTimer = Callable[[], None]


class MetricsSink(Protocol):
    """
    Interface for recording read path instrumentation.

    Methods
    -------
    start_timer(name)
        Start timing an operation; calling the returned function records it
    record_metric(name, value)
        Record a single sample for a named metric

    """

    def start_timer(self, name: str) -> StopTimer:
        ...

    def record_metric(self, name: str, value: float) -> None:
        ...


class PerformanceMonitor:
    """
    Keeps the most recent samples for each named operation.

    Durations recorded by timers are in milliseconds. Counters are recorded
    as samples of value 1.

    Parameters
    ----------
    max_samples : int
        Samples retained per metric name
    slow_threshold_ms : float
        Timer samples above this value are logged as warnings
    enabled : bool
        Whether samples are recorded at all

    """

    TARGETS_MS = {
        "portfolio-fetch-total": 500.0,
        "remote-cache-read": 50.0,
        "api-call": 3000.0,
    }

    def __init__(
        self,
        max_samples: int = 50,
        slow_threshold_ms: float = 500.0,
        enabled: bool = True,
    ) -> None:
        self.max_samples = max_samples
        self.slow_threshold_ms = slow_threshold_ms
        self.enabled = enabled
        self._samples: dict[str, deque[float]] = {}

    def start_timer(self, name: str) -> StopTimer:
        """
        Start timing an operation.

        Parameters
        ----------
        name : str
            Operation name

        Returns
        -------
        StopTimer
            Function that records the elapsed time when called

        """
        if not self.enabled:
            return lambda: None

        started = time.perf_counter()

        def stop() -> None:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self.record_metric(name, elapsed_ms)
            if elapsed_ms > self.slow_threshold_ms:
                logger.warning("Slow operation: %s took %.2fms", name, elapsed_ms)

        return stop

    def record_metric(self, name: str, value: float) -> None:
        """
        Record a sample.

        Parameters
        ----------
        name : str
            Metric name
        value : float
            Sample value

        """
        if not self.enabled:
            return
        samples = self._samples.get(name)
        if samples is None:
            samples = deque(maxlen=self.max_samples)
            self._samples[name] = samples
        samples.append(float(value))

    def count(self, name: str) -> int:
        """Number of retained samples for a metric."""
        return len(self._samples.get(name, ()))

    def get_stats(self, name: str | None = None) -> dict[str, Any]:
        """
        Summary statistics for one metric or for all of them.

        Parameters
        ----------
        name : str | None
            Metric name. Returns stats for every metric if None.

        Returns
        -------
        dict[str, Any]
            Stats with count, avg, min, max, p95 and the most recent samples.
            Keyed by metric name when ``name`` is None.

        """
        if name is not None:
            return self._calculate_stats(name, list(self._samples.get(name, ())))
        return {metric: self._calculate_stats(metric, list(samples)) for metric, samples in self._samples.items()}

    @staticmethod
    def _calculate_stats(name: str, samples: list[float]) -> dict[str, Any]:
        if not samples:
            return {"operation": name, "count": 0, "avg": 0.0, "min": 0.0, "max": 0.0, "p95": 0.0, "recent": []}

        ordered = sorted(samples)
        p95_index = min(int(len(ordered) * 0.95), len(ordered) - 1)
        return {
            "operation": name,
            "count": len(samples),
            "avg": sum(samples) / len(samples),
            "min": ordered[0],
            "max": ordered[-1],
            "p95": ordered[p95_index],
            "recent": samples[-5:],
        }

    def check_targets(self) -> dict[str, dict[str, Any]]:
        """
        Compare average durations against the latency targets.

        Returns
        -------
        dict[str, dict[str, Any]]
            For each target with samples: ``passed``, ``avg`` and ``target``

        """
        results = {}
        for name, target in self.TARGETS_MS.items():
            stats = self.get_stats(name)
            if stats["count"] > 0:
                results[name] = {"passed": stats["avg"] <= target, "avg": stats["avg"], "target": target}
        return results

    def generate_report(self) -> dict[str, Any]:
        """Return all stats and target checks, logging a one-line summary per metric."""
        stats = self.get_stats()
        for metric in stats.values():
            logger.info("%s: %.2f avg (%d samples)", metric["operation"], metric["avg"], metric["count"])
        return {"stats": stats, "targets": self.check_targets()}

    def clear(self) -> None:
        """Drop all samples."""
        self._samples.clear()

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled


def safe_record(sink: MetricsSink, name: str, value: float = 1) -> None:
    """Record a metric, logging and discarding any error raised by the sink."""
    try:
        sink.record_metric(name, value)
    except Exception as e:
        logger.debug("Failed to record metric %s: %s", name, e)


def safe_timer(sink: MetricsSink, name: str) -> StopTimer:
    """
    Start a timer whose start and stop never raise.

    Parameters
    ----------
    sink : MetricsSink
        Instrumentation sink
    name : str
        Operation name

    Returns
    -------
    StopTimer
        Function that records the elapsed time when called

    """
    try:
        stop = sink.start_timer(name)
    except Exception as e:
        logger.debug("Failed to start timer %s: %s", name, e)
        return lambda: None

    def guarded_stop() -> None:
        try:
            stop()
        except Exception as e:
            logger.debug("Failed to stop timer %s: %s", name, e)

    return guarded_stop
