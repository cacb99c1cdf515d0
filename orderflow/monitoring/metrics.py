"""
Prometheus metrics for the order/payment pipeline.

Tracks:
- Verification outcomes and duration
- Fraud decisions
- Idempotency cache hits
- Gateway API calls, errors and circuit breaker state
- Inventory oversells
- Retry/reconciliation batch results
- Webhook events
- HTTP requests per route
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["currency", "shipping_method"],
)

order_amount_minor_units = Histogram(
    "order_amount_minor_units",
    "Order totals in minor units",
    buckets=(1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000, 10000000),
)

# Verification metrics
payment_verifications_total = Counter(
    "payment_verifications_total",
    "Total payment verification callbacks by outcome",
    ["outcome"],  # captured, authorized, failed, already_processed, invalid_signature, ...
)

payment_verification_duration_seconds = Histogram(
    "payment_verification_duration_seconds",
    "Payment verification duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Fraud metrics
fraud_assessments_total = Counter(
    "fraud_assessments_total",
    "Total fraud assessments",
    ["level", "recommendation"],
)

fraud_score = Histogram(
    "fraud_score",
    "Distribution of fraud scores",
    buckets=(10, 20, 30, 40, 50, 60, 70, 80, 90, 100),
)

# Idempotency metrics
idempotency_cache_hits_total = Counter(
    "idempotency_cache_hits_total",
    "Total idempotency cache lookups",
    ["source"],  # redis, database, miss
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total payment gateway API requests",
    ["operation", "status"],
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total payment gateway API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Inventory metrics
inventory_oversell_total = Counter(
    "inventory_oversell_total",
    "Reservations that could not be fully satisfied",
)

inventory_oversell_units_total = Counter(
    "inventory_oversell_units_total",
    "Units short across oversold reservations",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, duplicate, ignored, failed
)

# Retry / reconciliation metrics
payment_retry_results_total = Counter(
    "payment_retry_results_total",
    "Payment retry attempts by result",
    ["result"],  # succeeded, failed, skipped
)

reconciliation_batch_duration_seconds = Histogram(
    "reconciliation_batch_duration_seconds",
    "Retry/sync/cleanup batch duration in seconds",
    ["job"],
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last batch run",
    ["job"],
)

# HTTP metrics
http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    ["method", "route", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency by route template",
    ["method", "route"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# Rate limiting
rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["bucket"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str, shipping_method: str, total_amount: int) -> None:
        orders_created_total.labels(currency=currency, shipping_method=shipping_method).inc()
        order_amount_minor_units.observe(total_amount)

    @staticmethod
    def record_verification(outcome: str, duration_seconds: float) -> None:
        """Record a verification callback outcome."""
        payment_verifications_total.labels(outcome=outcome).inc()
        payment_verification_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_fraud_assessment(level: str, recommendation: str, score: int) -> None:
        fraud_assessments_total.labels(level=level, recommendation=recommendation).inc()
        fraud_score.observe(score)

    @staticmethod
    def record_idempotency_cache_hit(source: str) -> None:
        """Record idempotency cache hit."""
        idempotency_cache_hits_total.labels(source=source).inc()

    @staticmethod
    def record_gateway_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_api_error(error_type: str) -> None:
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_oversell(shortfall: int) -> None:
        inventory_oversell_total.inc()
        inventory_oversell_units_total.inc(shortfall)

    @staticmethod
    def record_webhook_event(event_type: str, status: str) -> None:
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()

    @staticmethod
    def record_retry_result(result: str) -> None:
        payment_retry_results_total.labels(result=result).inc()

    @staticmethod
    def record_batch_run(job: str, duration_seconds: float) -> None:
        """Record a retry/sync/cleanup batch run."""
        reconciliation_batch_duration_seconds.labels(job=job).observe(duration_seconds)
        reconciliation_last_run_timestamp.labels(job=job).set(time.time())

    @staticmethod
    def record_http_request(method: str, route: str, status_code: int, duration_seconds: float) -> None:
        http_requests_total.labels(method=method, route=route, status_code=str(status_code)).inc()
        http_request_duration_seconds.labels(method=method, route=route).observe(duration_seconds)

    @staticmethod
    def record_rate_limit_rejection(bucket: str) -> None:
        rate_limit_rejections_total.labels(bucket=bucket).inc()


# Export singleton instance
metrics = MetricsCollector()
