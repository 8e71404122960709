"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Registration metrics
registration_attempts = Counter(
    'registration_attempts_total',
    'Total single registration attempts',
    ['outcome']  # confirmed, waitlisted, rejected, error
)

registration_latency = Histogram(
    'registration_latency_seconds',
    'Registration transaction latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

waitlist_promotions = Counter(
    'waitlist_promotions_total',
    'Registrations promoted from the waitlist'
)

cancellations = Counter(
    'registration_cancellations_total',
    'Registration cancellations',
    ['kind']  # self_service, admin_force, payment_failed
)

refunds = Counter(
    'refunds_total',
    'Refund outcomes on cancellation',
    ['result']  # processed, pending, not_applicable
)

# Bulk registration metrics
bulk_uploads = Counter(
    'bulk_uploads_total',
    'Bulk registration uploads',
    ['result']  # completed, partial, failed, pending_approval, rate_limited
)

bulk_rows = Counter(
    'bulk_rows_total',
    'Bulk registration rows processed',
    ['outcome']  # successful, failed, duplicate
)

approval_decisions = Counter(
    'bulk_approval_decisions_total',
    'Admin decisions on bulk registration requests',
    ['decision']  # approved, rejected, expired
)

# Database metrics
db_operations = Counter(
    'db_operations_total',
    'Total database operations',
    ['operation']  # read, write, retry
)

notification_errors = Counter(
    'notification_errors_total',
    'Notification sink publish failures'
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Convenience functions for instrumentation
def record_registration(outcome: str):
    """Record registration attempt. Outcome: confirmed, waitlisted, rejected, error"""
    registration_attempts.labels(outcome=outcome).inc()


def record_promotions(count: int):
    if count > 0:
        waitlist_promotions.inc(count)


def record_cancellation(kind: str):
    cancellations.labels(kind=kind).inc()


def record_refund(result: str):
    refunds.labels(result=result).inc()


def record_bulk_upload(result: str):
    bulk_uploads.labels(result=result).inc()


def record_bulk_rows(successful: int, failed: int, duplicate: int):
    bulk_rows.labels(outcome="successful").inc(successful)
    bulk_rows.labels(outcome="failed").inc(failed)
    bulk_rows.labels(outcome="duplicate").inc(duplicate)


def record_approval_decision(decision: str, count: int = 1):
    if count > 0:
        approval_decisions.labels(decision=decision).inc(count)


def record_db_operation(operation: str):
    """Record database operation. Operation: read, write, retry"""
    db_operations.labels(operation=operation).inc()
