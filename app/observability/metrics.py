"""Prometheus metrics for the service.

One :class:`MetricsRegistry` owns a private ``CollectorRegistry`` with every
instrument the service exports. The process-wide instance is created by
:func:`init_metrics`; tests and the app factory may also construct and inject
their own.

Usage:
    from app.observability.metrics import init_metrics

    metrics = init_metrics()
    done = metrics.record_request()
    try:
        ...
    finally:
        done()
"""

from __future__ import annotations

from threading import Lock

import structlog
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    disable_created_metrics,
    generate_latest,
)

DEFAULT_BUCKETS = Histogram.DEFAULT_BUCKETS
SIZE_BUCKETS = (100, 500, 1000, 5000, 10000, 50000, 100000)

# Only the documented samples are exported, no *_created series.
disable_created_metrics()


class MetricsNotInitializedError(RuntimeError):
    """Raised when the registry is read before :func:`init_metrics`."""


class RequestCompletion:
    """Callable returned by :meth:`MetricsRegistry.record_request`.

    Decrements the active-request gauge on its first call; later calls do nothing.
    """

    def __init__(self, gauge: Gauge) -> None:
        self._gauge = gauge
        self._lock = Lock()
        self._done = False

    def __call__(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        self._gauge.dec()


class MetricsRegistry:
    """Every collector the service exports, registered on one ``CollectorRegistry``."""

    def __init__(self, registry: CollectorRegistry | None = None, *, runtime_collectors: bool = True) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        # HTTP request metrics
        self.request_counter = Counter(
            "http_requests_total",
            "Total number of HTTP requests received",
            registry=self.registry,
        )
        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency in seconds",
            buckets=DEFAULT_BUCKETS,
            registry=self.registry,
        )
        self.request_size = Histogram(
            "http_request_size_bytes",
            "HTTP request size in bytes",
            buckets=SIZE_BUCKETS,
            registry=self.registry,
        )
        self.response_size = Histogram(
            "http_response_size_bytes",
            "HTTP response size in bytes",
            buckets=SIZE_BUCKETS,
            registry=self.registry,
        )
        self.http_error_counter = Counter(
            "http_errors_total",
            "Total number of HTTP errors (5xx)",
            registry=self.registry,
        )
        self.active_requests = Gauge(
            "http_requests_active",
            "Number of currently active HTTP requests",
            registry=self.registry,
        )

        # Background job metrics
        self.background_job_counter = Counter(
            "background_jobs_total",
            "Total number of background jobs executed",
            registry=self.registry,
        )
        self.background_job_duration = Histogram(
            "background_job_duration_seconds",
            "Background job execution time in seconds",
            buckets=DEFAULT_BUCKETS,
            registry=self.registry,
        )
        self.background_job_error_counter = Counter(
            "background_job_errors_total",
            "Total number of background job errors",
            registry=self.registry,
        )

        # External API call metrics
        self.api_call_counter = Counter(
            "api_calls_total",
            "Total number of external API calls made",
            registry=self.registry,
        )
        self.api_call_duration = Histogram(
            "api_call_duration_seconds",
            "External API call latency in seconds",
            buckets=DEFAULT_BUCKETS,
            registry=self.registry,
        )
        self.api_call_error_counter = Counter(
            "api_call_errors_total",
            "Total number of external API call errors",
            registry=self.registry,
        )

        # File processing metrics
        self.file_process_counter = Counter(
            "file_processes_total",
            "Total number of file processing operations",
            registry=self.registry,
        )
        self.file_process_duration = Histogram(
            "file_process_duration_seconds",
            "File processing duration in seconds",
            buckets=DEFAULT_BUCKETS,
            registry=self.registry,
        )
        self.file_process_bytes_counter = Counter(
            "file_process_bytes_total",
            "Total bytes processed",
            registry=self.registry,
        )
        self.file_process_error_counter = Counter(
            "file_process_errors_total",
            "Total number of file processing errors",
            registry=self.registry,
        )

        if runtime_collectors:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def record_request(self) -> RequestCompletion:
        """Count a new request and mark it active.

        The returned callable must run exactly once when the request ends,
        typically from a ``finally`` block.
        """
        self.request_counter.inc()
        self.active_requests.inc()
        return RequestCompletion(self.active_requests)

    def observe_duration(self, histogram: Histogram, duration: float) -> None:
        histogram.observe(duration)

    def inc_error(self, counter: Counter) -> None:
        counter.inc()

    def observe_request_size(self, size: float) -> None:
        self.request_size.observe(size)

    def observe_response_size(self, size: float) -> None:
        self.response_size.observe(size)

    def record_api_call(self, duration: float, err: BaseException | None = None) -> None:
        self.api_call_counter.inc()
        self.api_call_duration.observe(duration)
        if err is not None:
            self.api_call_error_counter.inc()

    def record_background_job(self, duration: float, err: BaseException | None = None) -> None:
        self.background_job_counter.inc()
        self.background_job_duration.observe(duration)
        if err is not None:
            self.background_job_error_counter.inc()

    def record_file_process(self, duration: float, nbytes: float, err: BaseException | None = None) -> None:
        self.file_process_counter.inc()
        self.file_process_duration.observe(duration)
        self.file_process_bytes_counter.inc(nbytes)
        if err is not None:
            self.file_process_error_counter.inc()

    def generate_latest(self) -> bytes:
        """Render every collector in the Prometheus text exposition format."""
        return generate_latest(self.registry)


_METRICS: MetricsRegistry | None = None
_METRICS_LOCK = Lock()


def init_metrics() -> MetricsRegistry:
    """Create the process-wide registry on first call and return it on every call.

    Thread-safe; concurrent callers all receive the same instance.
    """

    global _METRICS
    if _METRICS is not None:
        return _METRICS
    with _METRICS_LOCK:
        if _METRICS is None:
            _METRICS = MetricsRegistry()
            structlog.get_logger("metrics").info("metrics_initialized", collectors="prometheus")
    return _METRICS


def get_metrics() -> MetricsRegistry:
    if _METRICS is None:
        raise MetricsNotInitializedError("metrics not initialized: call init_metrics() first")
    return _METRICS


def reset_metrics() -> None:
    """Drop the process-wide registry (used by tests)."""

    global _METRICS
    with _METRICS_LOCK:
        _METRICS = None
