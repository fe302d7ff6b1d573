"""Prometheus metrics helpers for billing domain."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

WEBHOOK_EVENT_COUNT = Counter(
    "billing_webhook_events_total",
    "Stripe webhook deliveries by event family and response status",
    labelnames=("event_family", "status"),
)

WEBHOOK_LATENCY = Histogram(
    "billing_webhook_duration_seconds",
    "Time spent handling a Stripe webhook delivery",
    labelnames=("event_family",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

LEDGER_WRITE_COUNT = Counter(
    "billing_ledger_writes_total",
    "Ledger entries created or finalized",
    labelnames=("status", "payment_type"),
)

PAYMENT_SUCCESS_COUNT = Counter(
    "billing_payment_success_total",
    "Count of successful payment attempts",
    labelnames=("payment_type",),
)

PAYMENT_FAILURE_COUNT = Counter(
    "billing_payment_failure_total",
    "Count of failed payment attempts",
    labelnames=("reason",),
)

PLAN_SYNC_WRITES = Counter(
    "billing_plan_sync_external_writes_total",
    "Objects created in Stripe by plan synchronization",
    labelnames=("operation",),
)

PLAN_SYNC_FAILURES = Counter(
    "billing_plan_sync_failures_total",
    "Plan synchronization runs that stopped with an error",
    labelnames=("step",),
)
