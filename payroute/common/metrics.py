"""Prometheus metric definitions and the sink injected into services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payments_total = Counter("payments_total", "Charges processed", ["service", "provider", "currency", "status"])
refunds_total = Counter("refunds_total", "Refunds processed", ["service", "provider", "status"])
payment_errors_total = Counter(
    "payment_errors_total",
    "Charge/refund errors by stage",
    ["service", "operation", "error_type"],
)
payment_latency_seconds = Histogram("payment_latency_seconds", "Payment latency seconds", ["service", "operation"])
provider_calls_total = Counter(
    "provider_calls_total",
    "Provider calls by outcome",
    ["service", "provider", "operation", "outcome"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
circuit_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0 closed, 1 half-open, 2 open)",
    ["service", "breaker"],
)
provider_mapping_failures_total = Counter(
    "provider_mapping_failures_total",
    "Entity-provider mapping writes that failed",
    ["service", "entity_type"],
)
compensations_total = Counter(
    "compensations_total",
    "Compensating refunds issued after local persistence failed",
    ["service", "outcome"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half-open": 1, "open": 2}


class MetricsSink:
    """Recording facade handed to services at construction.

    Tests substitute a fake; several service instances can share one sink
    without touching the module-level collectors directly.
    """

    def __init__(self, service_name: str = "payroute") -> None:
        self.service_name = service_name

    def payment(self, provider: str, currency: str, status: str) -> None:
        payments_total.labels(
            service=self.service_name, provider=provider, currency=currency, status=status
        ).inc()

    def refund(self, provider: str, status: str) -> None:
        refunds_total.labels(service=self.service_name, provider=provider, status=status).inc()

    def error(self, operation: str, error_type: str) -> None:
        payment_errors_total.labels(
            service=self.service_name, operation=operation, error_type=error_type
        ).inc()

    def latency(self, operation: str):
        return payment_latency_seconds.labels(service=self.service_name, operation=operation).time()

    def provider_call(self, provider: str, operation: str, outcome: str) -> None:
        provider_calls_total.labels(
            service=self.service_name, provider=provider, operation=operation, outcome=outcome
        ).inc()

    def retry(self, dependency: str) -> None:
        retries_total.labels(service=self.service_name, dependency=dependency).inc()

    def circuit_state(self, breaker: str, state: str) -> None:
        circuit_state.labels(service=self.service_name, breaker=breaker).set(_CIRCUIT_STATE_VALUES.get(state, -1))

    def mapping_failure(self, entity_type: str) -> None:
        provider_mapping_failures_total.labels(service=self.service_name, entity_type=entity_type).inc()

    def compensation(self, outcome: str) -> None:
        compensations_total.labels(service=self.service_name, outcome=outcome).inc()


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
