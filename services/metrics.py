# services/metrics.py
from __future__ import annotations
import os

os.environ.setdefault("PROMETHEUS_DISABLE_CREATED_SERIES", "1")

from prometheus_client import (  # noqa: E402
    Counter, Histogram, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST,
)

# Use a DEDICATED registry so only our app metrics show up
APP_REGISTRY = CollectorRegistry(auto_describe=True)

# --- Generic HTTP metrics (bind to our registry) ---
REQUEST_COUNT = Counter(
    "http_requests_total", "HTTP requests total",
    ["method", "endpoint", "status"], registry=APP_REGISTRY
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Request latency (seconds)",
    ["endpoint", "method"], registry=APP_REGISTRY,
)

FORBIDDEN_REQUESTS = Counter(
    "auth_forbidden_total", "Authenticated requests refused for lack of role", registry=APP_REGISTRY
)

# --- Payments ---
PAYMENTS_CREATED = Counter(
    "payments_created_total", "Payments created", ["method", "type"], registry=APP_REGISTRY
)
PAYMENT_TRANSITIONS = Counter(
    "payments_status_transitions_total", "Applied payment status transitions",
    ["source", "status"], registry=APP_REGISTRY
)
GATEWAY_CALLS = Counter(
    "payments_gateway_calls_total", "Outbound gateway calls",
    ["provider", "op", "outcome"], registry=APP_REGISTRY
)
GATEWAY_LATENCY = Histogram(
    "payments_gateway_call_seconds", "Outbound gateway call latency (seconds)",
    ["provider", "op"], registry=APP_REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

# --- Webhook ---
WEBHOOK_EVENTS = Counter(
    "payments_webhook_events_total", "Webhook events", ["provider", "outcome"], registry=APP_REGISTRY
)

# --- Notifications ---
NOTIFICATIONS = Counter(
    "notifications_total", "Tenant notifications", ["kind", "outcome"], registry=APP_REGISTRY
)


def init_app(app):
    @app.get("/metrics")
    def metrics():
        data = generate_latest(APP_REGISTRY)
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    # --- pre-warm labeled series so dashboards don't say "No data" ---
    for provider in ("midtrans", "stripe"):
        for outcome in ("applied", "noop", "duplicate", "not_found", "bad_signature"):
            WEBHOOK_EVENTS.labels(provider=provider, outcome=outcome).inc(0)
    for kind in ("reminder", "confirmation", "overdue"):
        NOTIFICATIONS.labels(kind=kind, outcome="sent").inc(0)
        NOTIFICATIONS.labels(kind=kind, outcome="error").inc(0)
