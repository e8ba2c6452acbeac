"""Prometheus metrics helpers for billing domain."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

BILLING_REQUEST_COUNT = Counter(
    "billing_request_total",
    "Number of billing API requests",
    labelnames=("endpoint", "method", "status"),
)

BILLING_REQUEST_LATENCY = Histogram(
    "billing_request_duration_seconds",
    "Latency of billing API requests",
    labelnames=("endpoint", "method"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

CONSUMPTION_COUNT = Counter(
    "billing_consumption_total",
    "Consumption decisions by funding source",
    labelnames=("source",),
)

CREDIT_APPLIED_COUNT = Counter(
    "billing_credit_applied_total",
    "Payments reconciled into ledger credits",
    labelnames=("kind", "channel"),
)

DUPLICATE_PAYMENT_COUNT = Counter(
    "billing_duplicate_payment_total",
    "Payment deliveries that were already applied",
    labelnames=("channel",),
)

RECONCILIATION_INCONSISTENCY_COUNT = Counter(
    "billing_reconciliation_inconsistency_total",
    "Paid events that could not be applied",
    labelnames=("reason",),
)

WEBHOOK_SIGNATURE_FAILURE_COUNT = Counter(
    "billing_webhook_signature_failure_total",
    "Stripe webhook deliveries rejected by signature verification",
)

FORFEITED_POINTS_COUNT = Counter(
    "billing_forfeited_points_total",
    "Points removed from balances on expiry",
    labelnames=("cause",),
)
