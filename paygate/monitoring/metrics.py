"""
Prometheus metrics for payment gateway monitoring.

Tracks:
- Payment initiations by method and outcome
- Provider callbacks by method and outcome
- Outbound gateway calls and their latency
- Refunds by method and outcome
- Circuit breaker state per provider
"""
from prometheus_client import Counter, Gauge, Histogram

# Initiation metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total number of payment initiation requests",
    ["method", "outcome"],  # created, reused, rejected, gateway_unavailable
)

payment_initiation_duration_seconds = Histogram(
    "payment_initiation_duration_seconds",
    "Payment initiation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Callback metrics
payment_callbacks_total = Counter(
    "payment_callbacks_total",
    "Total provider callbacks received",
    ["method", "outcome"],  # applied, duplicate, rejected, error
)

payment_callback_duration_seconds = Histogram(
    "payment_callback_duration_seconds",
    "Callback processing duration in seconds",
    ["method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Gateway API metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total outbound provider API requests",
    ["provider", "operation", "status"],
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Outbound provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Refund metrics
payment_refunds_total = Counter(
    "payment_refunds_total",
    "Total refund requests",
    ["method", "outcome"],  # refunded, not_allowed, provider_rejected, gateway_unavailable
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initiation(method: str, outcome: str, duration_seconds: float) -> None:
        """Record a payment initiation."""
        payment_initiations_total.labels(method=method, outcome=outcome).inc()
        payment_initiation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_callback(method: str, outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        payment_callbacks_total.labels(method=method, outcome=outcome).inc()
        payment_callback_duration_seconds.labels(method=method).observe(duration_seconds)

    @staticmethod
    def record_gateway_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record an outbound provider call."""
        gateway_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        gateway_request_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_refund(method: str, outcome: str) -> None:
        """Record a refund attempt."""
        payment_refunds_total.labels(method=method, outcome=outcome).inc()


# Export singleton instance
metrics = MetricsCollector()
