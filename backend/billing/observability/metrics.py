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

CHECKOUT_REQUEST_COUNT = Counter(
    "billing_checkout_requests_total",
    "Number of checkout attempts by provider and outcome",
    labelnames=("provider", "outcome"),
)

PROVIDER_REQUEST_LATENCY = Histogram(
    "billing_provider_request_duration_seconds",
    "Latency of outbound payment provider calls",
    labelnames=("provider", "operation"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

PROVIDER_ERROR_COUNT = Counter(
    "billing_provider_errors_total",
    "Count of failed payment provider calls",
    labelnames=("provider", "operation", "reason"),
)

WEBHOOK_EVENT_COUNT = Counter(
    "billing_webhook_events_total",
    "Provider callbacks by normalised event type and outcome",
    labelnames=("provider", "event_type", "outcome"),
)

ORDER_RECONCILE_COUNT = Counter(
    "billing_order_reconcile_total",
    "Order status reconciliation outcomes",
    labelnames=("outcome",),
)
