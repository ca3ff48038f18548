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
            self.holds = None
            self.lock_wait = None
            self.lock_timeouts = None
            self.penalties = None
            self.blocks = None
            self.trust_outcomes = None
            self.confirmations = None
            self.confirmation_dispatch = None
            self.sweep_transitions = None
            self.db_retries = None
            self.rate_limit_blocks = None
            self.http_requests = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_runner_up = None
            self.job_errors = None
            self.circuit_state = None
            return

        self.holds = Counter(
            "booking_holds_total",
            "Hold lifecycle events by action and result.",
            ["action", "result"],
            registry=self.registry,
        )
        self.lock_wait = Histogram(
            "resource_lock_wait_seconds",
            "Time spent waiting for a resource-scoped lock.",
            ["scope"],
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
            registry=self.registry,
        )
        self.lock_timeouts = Counter(
            "resource_lock_timeouts_total",
            "Resource lock acquisitions that gave up.",
            ["scope"],
            registry=self.registry,
        )
        self.penalties = Counter(
            "customer_penalties_total",
            "Recorded penalties by violation type.",
            ["violation_type"],
            registry=self.registry,
        )
        self.blocks = Counter(
            "customer_blocks_total",
            "Customer block changes by action and reason.",
            ["action", "reason"],
            registry=self.registry,
        )
        self.trust_outcomes = Counter(
            "trust_outcomes_total",
            "Booking outcomes fed into the trust score.",
            ["outcome"],
            registry=self.registry,
        )
        self.confirmations = Counter(
            "booking_confirmations_total",
            "Confirmation status transitions.",
            ["status"],
            registry=self.registry,
        )
        self.confirmation_dispatch = Counter(
            "confirmation_dispatch_total",
            "Outbound confirmation messages by channel and status.",
            ["channel", "status"],
            registry=self.registry,
        )
        self.sweep_transitions = Counter(
            "sweep_transitions_total",
            "Rows transitioned by periodic sweeps.",
            ["sweep"],
            registry=self.registry,
        )
        self.db_retries = Counter(
            "db_retries_total",
            "Retried database operations by operation and error type.",
            ["operation", "error"],
            registry=self.registry,
        )
        self.rate_limit_blocks = Counter(
            "rate_limit_blocks_total",
            "Requests rejected by the rate limiter.",
            ["bucket"],
            registry=self.registry,
        )
        self.http_requests = Counter(
            "http_requests_total",
            "HTTP requests by method, route and status class.",
            ["method", "path", "status_class"],
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
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_hold(self, action: str, result: str) -> None:
        if not self.enabled or self.holds is None:
            return
        self.holds.labels(action=action, result=result or "unknown").inc()

    def record_lock_wait(self, scope: str, duration_seconds: float) -> None:
        if not self.enabled or self.lock_wait is None:
            return
        self.lock_wait.labels(scope=scope).observe(max(0.0, float(duration_seconds)))

    def record_lock_timeout(self, scope: str) -> None:
        if not self.enabled or self.lock_timeouts is None:
            return
        self.lock_timeouts.labels(scope=scope).inc()

    def record_penalty(self, violation_type: str) -> None:
        if not self.enabled or self.penalties is None:
            return
        self.penalties.labels(violation_type=violation_type).inc()

    def record_block(self, action: str, reason: str | None) -> None:
        if not self.enabled or self.blocks is None:
            return
        self.blocks.labels(action=action, reason=reason or "unknown").inc()

    def record_trust_outcome(self, outcome: str) -> None:
        if not self.enabled or self.trust_outcomes is None:
            return
        self.trust_outcomes.labels(outcome=outcome).inc()

    def record_confirmation(self, status: str, count: int = 1) -> None:
        if not self.enabled or self.confirmations is None:
            return
        if count <= 0:
            return
        self.confirmations.labels(status=status).inc(count)

    def record_confirmation_dispatch(self, channel: str, status: str) -> None:
        if not self.enabled or self.confirmation_dispatch is None:
            return
        self.confirmation_dispatch.labels(channel=channel, status=status or "unknown").inc()

    def record_sweep(self, sweep: str, count: int) -> None:
        if not self.enabled or self.sweep_transitions is None:
            return
        if count <= 0:
            return
        self.sweep_transitions.labels(sweep=sweep).inc(count)

    def record_db_retry(self, operation: str, error: str) -> None:
        if not self.enabled or self.db_retries is None:
            return
        self.db_retries.labels(operation=operation, error=error or "unknown").inc()

    def record_rate_limit_block(self, bucket: str) -> None:
        if not self.enabled or self.rate_limit_blocks is None:
            return
        self.rate_limit_blocks.labels(bucket=bucket or "other").inc()

    def record_http_request(self, method: str, path: str, status_code: int) -> None:
        if not self.enabled or self.http_requests is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        self.http_requests.labels(method=method, path=path, status_class=status_class).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

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
