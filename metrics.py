#!/usr/bin/env python3
"""
Metric source types and an in-process metrics registry.

The reporter reads metrics through a metric source: any object with a
snapshot() method returning a MetricsSnapshot. A snapshot holds three ordered
sequences:

- timed metrics: name, count, max, mean, total
- query metrics: optional name, type label, count, max, mean, total
  (a query metric without a name had no observations and is skipped)
- count metrics: name, count

MetricsRegistry is a thread-safe source that application code records into
directly. Timings are plain numbers in whatever unit the caller uses,
typically microseconds.

Typical usage:
    from metrics import MetricsRegistry

    registry = MetricsRegistry()
    registry.record_timed("txn.commit", 1250)
    registry.record_query("findCustomer", "SqlQuery", 430)
    registry.increment("cache.miss")

    with registry.time_operation("batch.load"):
        load_batch()

    snapshot = registry.snapshot()
"""

import time
import threading
import logging
from contextlib import contextmanager
from typing import Dict, Any, Optional, Sequence, Tuple, Iterator, NamedTuple

__version__ = '1.0.0'
__all__ = ['MetricsRegistry', 'MetricsSnapshot', 'TimedMetric', 'QueryMetric', 'CountMetric']

logger = logging.getLogger("CollectdReporter.Metrics")


class TimedMetric(NamedTuple):
    name: str
    count: int
    max: float
    mean: float
    total: float


class QueryMetric(NamedTuple):
    name: Optional[str]
    type_label: str
    count: int
    max: float
    mean: float
    total: float


class CountMetric(NamedTuple):
    name: str
    count: int


class MetricsSnapshot(NamedTuple):
    """Metrics collected over one reporting interval."""
    timed_metrics: Sequence[TimedMetric] = ()
    query_metrics: Sequence[QueryMetric] = ()
    count_metrics: Sequence[CountMetric] = ()


class _Timing:
    """Accumulates count, max and total for one timed or query metric."""

    def __init__(self):
        self.count = 0
        self.max = 0.0
        self.total = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        if value > self.max:
            self.max = value

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0


class MetricsRegistry:
    """
    Collects timed, query and count metrics for the reporter.

    Metrics keep their first-recorded order. By default snapshot() resets the
    collected values so each report covers a single interval.
    """

    def __init__(self, enabled: bool = True, reset_on_snapshot: bool = True):
        """
        Initialize the metrics registry.

        Args:
            enabled (bool): Whether recording is enabled
            reset_on_snapshot (bool): Clear collected metrics after each snapshot
        """
        self.enabled = enabled
        self.reset_on_snapshot = reset_on_snapshot

        self._timed: Dict[str, _Timing] = {}
        self._queries: Dict[Tuple[str, str], _Timing] = {}
        self._counts: Dict[str, int] = {}

        # Lock for thread safety
        self.lock = threading.Lock()

    def record_timed(self, name: str, value: float) -> None:
        """
        Record one timed execution.

        Args:
            name (str): Metric name, e.g. "txn.commit"
            value (float): Elapsed time of the execution
        """
        if not self.enabled:
            return

        with self.lock:
            timing = self._timed.get(name)
            if timing is None:
                timing = self._timed[name] = _Timing()
            timing.add(value)

    def record_query(self, name: str, type_label: str, value: float) -> None:
        """
        Record one query execution.

        Args:
            name (str): Query label
            type_label (str): Kind of query, e.g. "SqlQuery" or "OrmQuery"
            value (float): Elapsed time of the execution
        """
        if not self.enabled:
            return

        with self.lock:
            key = (type_label, name)
            timing = self._queries.get(key)
            if timing is None:
                timing = self._queries[key] = _Timing()
            timing.add(value)

    def increment(self, name: str, count: int = 1) -> None:
        """
        Increment a count metric.

        Args:
            name (str): Metric name
            count (int): Number to increment by
        """
        if not self.enabled:
            return

        with self.lock:
            self._counts[name] = self._counts.get(name, 0) + count

    @contextmanager
    def time_operation(self, name: str, scale: float = 1e6) -> Iterator[None]:
        """
        Time the enclosed block and record it as a timed metric.

        Args:
            name (str): Metric name
            scale (float): Multiplier applied to elapsed seconds; the default
                records microseconds
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timed(name, (time.perf_counter() - start) * scale)

    def snapshot(self) -> MetricsSnapshot:
        """
        Get the metrics collected since the last reset.

        Returns:
            MetricsSnapshot: Timed, query and count metrics in recording order
        """
        with self.lock:
            snapshot = MetricsSnapshot(
                timed_metrics=[
                    TimedMetric(name, t.count, t.max, t.mean, t.total)
                    for name, t in self._timed.items()
                ],
                query_metrics=[
                    QueryMetric(name, type_label, t.count, t.max, t.mean, t.total)
                    for (type_label, name), t in self._queries.items()
                ],
                count_metrics=[
                    CountMetric(name, count) for name, count in self._counts.items()
                ],
            )
            if self.reset_on_snapshot:
                self._reset()

        logger.debug(f"Snapshot taken: {len(snapshot.timed_metrics)} timed, "
                     f"{len(snapshot.query_metrics)} query, {len(snapshot.count_metrics)} count metrics")
        return snapshot

    def reset(self) -> None:
        """Clear all collected metrics."""
        with self.lock:
            self._reset()

    def get_current_metrics(self) -> Dict[str, Any]:
        """
        Get a summary of what has been collected, without resetting.

        Returns:
            dict: Number of metrics of each kind and total recorded executions
        """
        with self.lock:
            return {
                'timed_metrics': len(self._timed),
                'query_metrics': len(self._queries),
                'count_metrics': len(self._counts),
                'executions': sum(t.count for t in self._timed.values())
                              + sum(t.count for t in self._queries.values())
            }

    def _reset(self) -> None:
        self._timed = {}
        self._queries = {}
        self._counts = {}
