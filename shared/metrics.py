"""
Shared metrics configuration for the Identity Core.
"""

from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info


class MetricsCollector:
    """Centralized metrics collector for services.

    Metrics are registered on ``registry``; pass a fresh
    ``CollectorRegistry`` per application so several instances can coexist
    in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
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

        self._setup_identity_metrics()

    def _setup_identity_metrics(self):
        """Set up identity-specific metrics."""
        self._metrics["auth_attempts_total"] = Counter(
            "auth_attempts_total",
            "Total authentication attempts",
            ["flow", "outcome"],
            registry=self.registry
        )

        self._metrics["user_registrations_total"] = Counter(
            "user_registrations_total",
            "Total user registrations",
            registry=self.registry
        )

        self._metrics["refresh_rotations_total"] = Counter(
            "refresh_rotations_total",
            "Total refresh token rotations",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["federated_logins_total"] = Counter(
            "federated_logins_total",
            "Total federated logins",
            ["provider", "outcome"],
            registry=self.registry
        )

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

    def record_auth_attempt(self, flow: str, outcome: str):
        self._metrics["auth_attempts_total"].labels(flow=flow, outcome=outcome).inc()

    def record_registration(self):
        self._metrics["user_registrations_total"].inc()

    def record_rotation(self, outcome: str):
        self._metrics["refresh_rotations_total"].labels(outcome=outcome).inc()

    def record_federated_login(self, provider: str, outcome: str):
        self._metrics["federated_logins_total"].labels(provider=provider, outcome=outcome).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
