"""
Shared metrics configuration for the Feed Reader Access Layer.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns a registry unless one is passed in, so several service
    instances (tests create many) never collide on metric names.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
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

        self._setup_rate_limit_metrics()

    def _setup_rate_limit_metrics(self):
        """Set up admission control metrics."""
        self._metrics["rate_limit_decisions_total"] = Counter(
            "rate_limit_decisions_total",
            "Admission decisions taken by token bucket limiters",
            ["limiter", "outcome"],
            registry=self.registry
        )

        self._metrics["rate_limit_tracked_keys"] = Gauge(
            "rate_limit_tracked_keys",
            "Number of buckets currently tracked",
            ["limiter"],
            registry=self.registry
        )

        self._metrics["rate_limit_evictions_total"] = Counter(
            "rate_limit_evictions_total",
            "Buckets dropped from the registry",
            ["limiter", "reason"],
            registry=self.registry
        )

        self._metrics["rate_limit_backend_errors_total"] = Counter(
            "rate_limit_backend_errors_total",
            "Shared-store failures that caused a fail-open decision",
            ["limiter"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read the current value of a sample from this collector's registry."""
        return self.registry.get_sample_value(name, labels or {})

    def export(self) -> bytes:
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

    def record_rate_limit_decision(self, limiter: str, allowed: bool):
        """Count one admission decision."""
        outcome = "allowed" if allowed else "denied"
        self._metrics["rate_limit_decisions_total"].labels(limiter=limiter, outcome=outcome).inc()

    def record_rate_limit_eviction(self, limiter: str, reason: str, count: int = 1):
        """Count buckets removed by LRU overflow, idle sweeps or resets."""
        if count:
            self._metrics["rate_limit_evictions_total"].labels(limiter=limiter, reason=reason).inc(count)

    def record_rate_limit_backend_error(self, limiter: str):
        """Count a shared-store failure."""
        self._metrics["rate_limit_backend_errors_total"].labels(limiter=limiter).inc()

    def set_tracked_keys(self, limiter: str, count: int):
        """Publish the size of a limiter's bucket registry."""
        self._metrics["rate_limit_tracked_keys"].labels(limiter=limiter).set(count)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
