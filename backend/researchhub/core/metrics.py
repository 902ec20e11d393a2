"""Prometheus metrics for the billing service.

HTTP request metrics plus counters for the payment, retry, fraud and
credit flows.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "researchhub_billing_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Payment Metrics
# ============================================
PAYMENTS_TOTAL = Counter(
    "billing_payments_total",
    "Payment outcomes recorded by the ledger",
    ["outcome"],
    registry=REGISTRY,
)

RETRIES_SCHEDULED_TOTAL = Counter(
    "billing_retries_scheduled_total",
    "Failed payments scheduled for another attempt",
    registry=REGISTRY,
)

RETRIES_EXHAUSTED_TOTAL = Counter(
    "billing_retries_exhausted_total",
    "Failed payments that reached the retry limit",
    registry=REGISTRY,
)

FRAUD_FLAGS_TOTAL = Counter(
    "billing_fraud_flags_total",
    "Payments flagged for fraud review",
    ["review_status"],
    registry=REGISTRY,
)

WEBHOOK_REPLAYS_TOTAL = Counter(
    "billing_webhook_replays_total",
    "Replayed gateway events absorbed without a state change",
    ["event_type"],
    registry=REGISTRY,
)

GATEWAY_CALL_DURATION_SECONDS = Histogram(
    "billing_gateway_call_duration_seconds",
    "Duration of outbound gateway charge calls",
    ["outcome"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)


# ============================================
# Credit Metrics
# ============================================
CREDITS_GRANTED_TOTAL = Counter(
    "billing_credits_granted_total",
    "Credits added to credit accounts",
    ["source"],
    registry=REGISTRY,
)

CREDITS_USED_TOTAL = Counter(
    "billing_credits_used_total",
    "Credits consumed from credit accounts",
    registry=REGISTRY,
)

MANUAL_PAYMENTS_TOTAL = Counter(
    "billing_manual_payments_total",
    "Manual payment requests by status",
    ["status"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
