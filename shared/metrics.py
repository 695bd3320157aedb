"""
Prometheus metrics for Entitlement Platform services.

Metric families are declared as tables and registered on a per-collector
registry, so several service instances can share one process (tests build
a fresh service per case).
"""

from typing import Dict, Optional, Sequence, Tuple, Union

from prometheus_client import CollectorRegistry, Counter, Histogram, Info

MetricFamily = Tuple[type, str, str, Sequence[str]]

COMMON_METRICS: Sequence[MetricFamily] = (
    (Counter, "http_requests_total", "Total HTTP requests", ("method", "endpoint", "status_code")),
    (Histogram, "http_request_duration_seconds", "HTTP request duration in seconds", ("method", "endpoint")),
    (Counter, "health_check_total", "Health check results", ("status",)),
    (Counter, "errors_total", "Error responses by code", ("error_type", "service")),
    (Counter, "business_events_total", "Entitlement lifecycle events", ("event_type", "service")),
)

ENTITLEMENT_METRICS: Sequence[MetricFamily] = (
    (Counter, "webhook_events_total", "Webhook deliveries by event type and outcome", ("event_type", "outcome")),
    (Histogram, "webhook_processing_seconds", "Webhook processing duration in seconds", ("event_type",)),
    (Counter, "entitlement_cache_total", "Entitlement cache lookups", ("result",)),
    (Counter, "rate_limit_decisions_total", "Rate limit decisions", ("endpoint", "decision")),
    (Counter, "usage_increments_total", "Usage increments by backing store", ("backend",)),
)

SERVICE_METRICS: Dict[str, Sequence[MetricFamily]] = {
    "entitlements": ENTITLEMENT_METRICS,
}


class MetricsCollector:
    """Registers metric families for a service and records into them.

    Unknown metric names passed to ``increment_counter`` or
    ``observe_histogram`` are ignored, so components built without a
    service-specific table still run.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Union[Counter, Histogram]] = {}

        info = Info("service_info", "Service information", registry=self.registry)
        info.info({"service": service_name, "version": "1.0.0"})

        self._register(COMMON_METRICS)
        self._register(SERVICE_METRICS.get(service_name, ()))

    def _register(self, families: Sequence[MetricFamily]):
        for metric_type, name, documentation, labels in families:
            self._metrics[name] = metric_type(name, documentation, list(labels), registry=self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self.increment_counter("http_requests_total", method=method, endpoint=endpoint, status_code=str(status_code))
        self.observe_histogram("http_request_duration_seconds", duration, method=method, endpoint=endpoint)

    def record_health_check(self, status: str):
        self.increment_counter("health_check_total", status=status)

    def record_error(self, error_type: str):
        """Count an error response by its platform error code."""
        self.increment_counter("errors_total", error_type=error_type, service=self.service_name)

    def record_business_event(self, event_type: str):
        """Count a grant, revocation or other lifecycle event."""
        self.increment_counter("business_events_total", event_type=event_type, service=self.service_name)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        metric = self._metrics.get(metric_name)
        if isinstance(metric, Counter):
            metric.labels(**labels).inc(amount)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        metric = self._metrics.get(metric_name)
        if isinstance(metric, Histogram):
            metric.labels(**labels).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
