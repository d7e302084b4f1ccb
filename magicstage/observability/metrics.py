"""
Prometheus metrics for production observability.

Metrics tracked:
- Request latency (histogram) and count (counter) per endpoint
- Active requests (gauge)
- Ledger mutations and credits moved, by entry kind
- Insufficient-credit rejections and ledger invariant violations
- Staging job outcomes, in-flight jobs and AI provider latency
- Payment webhook outcomes
- Error rates (counter) by error type

Ledger metrics are emitted from post-commit callbacks, so a rolled-back unit
of work never shows up as a mutation.

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "magic_staging_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.005,  # 5ms
        0.010,  # 10ms
        0.025,  # 25ms
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s
        2.500,  # 2.5s
        5.000,  # 5s
    ),
)

http_requests_total = Counter(
    "magic_staging_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "magic_staging_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

# ============================================================================
# LEDGER METRICS
# ============================================================================

ledger_mutations_total = Counter(
    "magic_staging_ledger_mutations_total",
    "Committed ledger entries by kind",
    labelnames=["kind"],
)

ledger_credits_total = Counter(
    "magic_staging_ledger_credits_total",
    "Absolute credits moved by committed ledger entries",
    labelnames=["kind"],
)

insufficient_credits_total = Counter(
    "magic_staging_insufficient_credits_total",
    "Reservations rejected because the balance was too low",
)

ledger_invariant_violations_total = Counter(
    "magic_staging_ledger_invariant_violations_total",
    "Ledger invariant violations (should always be zero)",
    labelnames=["operation"],
)

ledger_reconciliation_drift = Gauge(
    "magic_staging_ledger_reconciliation_drift_credits",
    "Balance minus sum of ledger entries at last reconciliation (drifted accounts only)",
    labelnames=["organization_id"],
)

# ============================================================================
# STAGING METRICS
# ============================================================================

staging_jobs_total = Counter(
    "magic_staging_jobs_total",
    "Finalized staging jobs",
    labelnames=["status", "reason"],
)

staging_jobs_active = Gauge(
    "magic_staging_jobs_active",
    "Staging jobs waiting on the AI provider in this process",
)

stale_jobs_recovered_total = Counter(
    "magic_staging_stale_jobs_recovered_total",
    "In-flight jobs failed and refunded by recovery",
)

ai_provider_duration_seconds = Histogram(
    "magic_staging_ai_provider_duration_seconds",
    "AI provider staging call latency",
    labelnames=["success"],
    buckets=(
        1.0,
        2.5,
        5.0,
        10.0,
        20.0,
        30.0,
        60.0,
        90.0,
        120.0,
    ),
)

ai_provider_cost_cents_total = Counter(
    "magic_staging_ai_provider_cost_cents_total",
    "Reported AI provider cost of completed jobs, in cents",
)

# ============================================================================
# PAYMENT METRICS
# ============================================================================

webhook_events_total = Counter(
    "magic_staging_webhook_events_total",
    "Payment webhook events by outcome",
    labelnames=["event_type", "outcome"],
)

webhook_signature_failures_total = Counter(
    "magic_staging_webhook_signature_failures_total",
    "Payment webhooks rejected for a bad signature",
)

# ============================================================================
# ERROR METRICS
# ============================================================================

errors_total = Counter(
    "magic_staging_errors_total",
    "Total errors by type",
    labelnames=["error_type", "endpoint"],
)

rate_limit_exceeded_total = Counter(
    "magic_staging_rate_limit_exceeded_total",
    "Total rate limit violations",
    labelnames=["endpoint"],
)

store_unavailable_total = Counter(
    "magic_staging_store_unavailable_total",
    "Units of work that failed after transient-error retries",
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: API endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_ledger_mutation(kind: str, amount: int) -> None:
    """
    Track a committed ledger entry.

    Args:
        kind: Entry kind (reserve, commit, refund, grant)
        amount: Signed entry amount
    """
    ledger_mutations_total.labels(kind=kind).inc()
    if amount:
        ledger_credits_total.labels(kind=kind).inc(abs(amount))


def track_insufficient_credits() -> None:
    insufficient_credits_total.inc()


def track_invariant_violation(operation: str) -> None:
    ledger_invariant_violations_total.labels(operation=operation).inc()


def set_reconciliation_drift(organization_id: str, drift: int) -> None:
    """Export an account's drift; consistent accounts have no series."""
    if drift:
        ledger_reconciliation_drift.labels(organization_id=organization_id).set(drift)
        return
    try:
        ledger_reconciliation_drift.remove(organization_id)
    except KeyError:
        # never drifted
        pass


def track_staging_job(status: str, reason: str = "none") -> None:
    """
    Track a staging job reaching a terminal state.

    Args:
        status: completed or failed
        reason: Failure reason (provider_error, timeout, ...) or "none"
    """
    staging_jobs_total.labels(status=status, reason=reason).inc()


def track_provider_call(duration_seconds: float, success: bool) -> None:
    ai_provider_duration_seconds.labels(success=str(success).lower()).observe(duration_seconds)


def track_provider_cost(cost_cents: int) -> None:
    if cost_cents > 0:
        ai_provider_cost_cents_total.inc(cost_cents)


def track_stale_jobs_recovered(count: int) -> None:
    if count > 0:
        stale_jobs_recovered_total.inc(count)


def track_webhook_event(event_type: str, outcome: str) -> None:
    """
    Track payment webhook processing.

    Args:
        event_type: Provider event type (payment_intent.succeeded, ...)
        outcome: applied, duplicate, rejected or ignored
    """
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def track_webhook_signature_failure() -> None:
    webhook_signature_failures_total.inc()


def track_error(error_type: str, endpoint: str) -> None:
    """
    Track error occurrence.

    Args:
        error_type: Error type (validation, insufficient_credits, store_unavailable, etc.)
        endpoint: API endpoint where error occurred
    """
    errors_total.labels(
        error_type=error_type,
        endpoint=endpoint,
    ).inc()


def track_rate_limit_exceeded(endpoint: str) -> None:
    rate_limit_exceeded_total.labels(endpoint=endpoint).inc()


def track_store_unavailable() -> None:
    store_unavailable_total.inc()


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
