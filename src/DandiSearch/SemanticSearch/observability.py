"""
Lightweight observability primitives for ingestion, indexing, and search.

The observability system supports:
- Counter and histogram metrics collection with labelled dimensions
- Timing spans that feed histograms and structured log events
- A serialisable snapshot consumed by the CLI and the refresh reports
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Mapping, MutableMapping, Optional, Tuple

__all__ = (
    "CounterSample",
    "HistogramSample",
    "MetricsCollector",
    "Observability",
    "TraceRecorder",
)

_LabelKey = Tuple[str, Tuple[Tuple[str, str], ...]]


@dataclass
class CounterSample:
    """Sample from a counter metric with labels and value.

    Examples:
        >>> CounterSample(name="records_embedded", labels={"status": "ok"}, value=3.0).value
        3.0
    """

    name: str
    labels: Mapping[str, str]
    value: float


@dataclass
class HistogramSample:
    """Sample from a histogram metric with percentile statistics.

    Attributes:
        name: Name of the histogram metric
        labels: Dictionary of label key-value pairs
        count: Total number of observations
        p50: 50th percentile (median) value
        p95: 95th percentile value
        p99: 99th percentile value
    """

    name: str
    labels: Mapping[str, str]
    count: int
    p50: float
    p95: float
    p99: float


class MetricsCollector:
    """Thread-safe in-memory metrics collector with Prometheus-style summaries.

    Search threads, the embedding worker pool, and the refresh scheduler all
    report into one collector, so every mutation happens under a lock.

    Examples:
        >>> collector = MetricsCollector()
        >>> collector.increment("search_requests")
        >>> collector.observe("search_latency_ms", 4.2)
        >>> [sample.value for sample in collector.export_counters()]
        [1.0]
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: MutableMapping[_LabelKey, float] = defaultdict(float)
        self._histograms: MutableMapping[_LabelKey, list[float]] = defaultdict(list)

    def increment(self, name: str, amount: float = 1.0, **labels: str) -> None:
        """Increase a counter metric by the given amount.

        Args:
            name: Metric identifier.
            amount: Increment to apply to the counter (default: 1.0).
            **labels: Arbitrary label key/value pairs for dimensioning.
        """
        key = (name, tuple(sorted(labels.items())))
        with self._lock:
            self._counters[key] += amount

    def observe(self, name: str, value: float, **labels: str) -> None:
        """Record an observation for a histogram metric."""
        key = (name, tuple(sorted(labels.items())))
        with self._lock:
            self._histograms[key].append(value)

    def counter_value(self, name: str, **labels: str) -> float:
        """Return the current value of a counter (``0.0`` when never incremented)."""

        key = (name, tuple(sorted(labels.items())))
        with self._lock:
            return self._counters.get(key, 0.0)

    def export_counters(self) -> Iterable[CounterSample]:
        """Iterate over collected counter metrics as structured samples."""
        with self._lock:
            items = list(self._counters.items())
        for (name, labels), value in items:
            yield CounterSample(name=name, labels=dict(labels), value=value)

    def export_histograms(self) -> Iterable[HistogramSample]:
        """Iterate over collected histogram metrics summarised by percentiles."""
        with self._lock:
            items = [(key, list(samples)) for key, samples in self._histograms.items()]
        for (name, labels), samples in items:
            sorted_samples = sorted(samples)
            count = len(sorted_samples)
            if count == 0:
                continue
            p50 = sorted_samples[int(0.5 * (count - 1))]
            p95 = sorted_samples[int(0.95 * (count - 1))]
            p99 = sorted_samples[int(0.99 * (count - 1))]
            yield HistogramSample(
                name=name, labels=dict(labels), count=count, p50=p50, p95=p95, p99=p99
            )


class TraceRecorder:
    """Context manager producing timing spans for tracing.

    Examples:
        >>> recorder = TraceRecorder(MetricsCollector(), logging.getLogger("test"))
        >>> with recorder.span("example"):
        ...     pass
    """

    def __init__(self, metrics: MetricsCollector, logger: logging.Logger) -> None:
        self._metrics = metrics
        self._logger = logger

    @contextmanager
    def span(self, name: str, **attributes: str) -> Iterator[None]:
        """Record execution duration for a traced operation.

        Args:
            name: Span name, used in metric and log emission.
            **attributes: Additional context attached to metrics and logs.

        Yields:
            None

        Raises:
            Exception: Propagates any exception raised inside the traced block.
        """
        start = time.perf_counter()
        status = "error"
        try:
            yield
            status = "ok"
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self._metrics.observe(f"trace_{name}_ms", duration_ms, **attributes)
            payload = {"span": name, "duration_ms": round(duration_ms, 3), "status": status}
            payload.update(attributes)
            self._logger.debug("semantic-trace", extra={"event": payload})


class Observability:
    """Facade for metrics, structured logging, and tracing.

    Examples:
        >>> obs = Observability()
        >>> isinstance(obs.metrics_snapshot(), dict)
        True
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._metrics = MetricsCollector()
        self._logger = logger or logging.getLogger("DandiSearch.SemanticSearch")
        self._tracer = TraceRecorder(self._metrics, self._logger)

    @property
    def metrics(self) -> MetricsCollector:
        """Access the shared metrics collector."""
        return self._metrics

    @property
    def logger(self) -> logging.Logger:
        """Structured logger scoped to semantic search observability events."""
        return self._logger

    def trace(self, name: str, **attributes: str) -> Iterator[None]:
        """Create a tracing span context for measuring critical operations.

        Args:
            name: Span name describing the operation being timed.
            **attributes: Additional context for metrics and structured logging.

        Returns:
            Context manager yielding control to the caller.
        """
        return self._tracer.span(name, **attributes)

    def metrics_snapshot(self) -> Dict[str, list[Mapping[str, object]]]:
        """Produce a serialisable snapshot of counters and histograms."""
        counters = [sample.__dict__ for sample in self._metrics.export_counters()]
        histograms = [sample.__dict__ for sample in self._metrics.export_histograms()]
        return {"counters": counters, "histograms": histograms}
