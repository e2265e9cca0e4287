import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.booking_transitions = None
            self.booking_errors = None
            self.payment_operations = None
            self.payment_amount = None
            self.notifications = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_runner_up = None
            self.job_errors = None
            self.job_processed = None
            self.circuit_state = None
            return

        self.booking_transitions = Counter(
            "booking_transitions_total",
            "Booking lifecycle transitions by operation and resulting status.",
            ["operation", "status"],
            registry=self.registry,
        )
        self.booking_errors = Counter(
            "booking_errors_total",
            "Booking operations rejected by error type.",
            ["operation", "error"],
            registry=self.registry,
        )
        self.payment_operations = Counter(
            "payment_operations_total",
            "Payment gateway calls by operation and outcome.",
            ["operation", "outcome"],
            registry=self.registry,
        )
        self.payment_amount = Counter(
            "payment_amount_cents_total",
            "Money moved through the gateway in cents.",
            ["operation"],
            registry=self.registry,
        )
        self.notifications = Counter(
            "notifications_total",
            "Notification delivery attempts by type and status.",
            ["type", "status"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_last_heartbeat_timestamp",
            "Unix timestamp for the latest job heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful job loop.",
            ["job"],
            registry=self.registry,
        )
        self.job_runner_up = Gauge(
            "job_runner_up",
            "Job runner liveness indicator (1=recent heartbeat).",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )
        self.job_processed = Counter(
            "job_processed_total",
            "Bookings touched by background jobs.",
            ["job", "outcome"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_booking_transition(self, operation: str, status: str) -> None:
        if not self.enabled or self.booking_transitions is None:
            return
        self.booking_transitions.labels(operation=operation, status=status).inc()

    def record_booking_error(self, operation: str, error: str) -> None:
        if not self.enabled or self.booking_errors is None:
            return
        self.booking_errors.labels(operation=operation, error=error or "unknown").inc()

    def record_payment_operation(self, operation: str, outcome: str, amount_cents: int = 0) -> None:
        if not self.enabled or self.payment_operations is None or self.payment_amount is None:
            return
        self.payment_operations.labels(operation=operation, outcome=outcome).inc()
        if outcome == "success" and amount_cents > 0:
            self.payment_amount.labels(operation=operation).inc(amount_cents)

    def record_notification(self, notification_type: str, status: str) -> None:
        if not self.enabled or self.notifications is None:
            return
        self.notifications.labels(type=notification_type or "unknown", status=status).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(duration_seconds)

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None or self.job_runner_up is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)
        self.job_runner_up.labels(job=job).set(1)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        safe_reason = reason or "unknown"
        self.job_errors.labels(job=job, reason=safe_reason).inc()

    def record_job_processed(self, job: str, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.job_processed is None:
            return
        if count <= 0:
            return
        self.job_processed.labels(job=job, outcome=outcome).inc(count)

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
