"""
Shared metrics configuration for the VMetrics Access Layer.
"""

from typing import Dict, Any, Optional
import threading

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Each collector owns a registry so several services (or tests) can
        # coexist in one process without duplicate-timeseries errors.
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "redtrack":
            self._setup_redtrack_metrics()

    def _setup_redtrack_metrics(self):
        """Set up metrics for the RedTrack fetch queue."""
        self._metrics["upstream_requests_total"] = Counter(
            "upstream_requests_total",
            "Total outbound requests to the upstream API",
            ["endpoint", "status"],
            registry=self.registry
        )

        self._metrics["upstream_request_duration_seconds"] = Histogram(
            "upstream_request_duration_seconds",
            "Upstream request duration in seconds",
            ["endpoint"],
            registry=self.registry
        )

        self._metrics["upstream_cache_hits_total"] = Counter(
            "upstream_cache_hits_total",
            "Total upstream responses served from cache",
            registry=self.registry
        )

        self._metrics["upstream_cache_misses_total"] = Counter(
            "upstream_cache_misses_total",
            "Total upstream lookups that missed the cache",
            registry=self.registry
        )

        self._metrics["upstream_rate_limited_total"] = Counter(
            "upstream_rate_limited_total",
            "Upstream 429 responses by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["fetch_queue_depth"] = Gauge(
            "fetch_queue_depth",
            "Requests waiting in or being served by the fetch queue",
            registry=self.registry
        )

    def render(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
