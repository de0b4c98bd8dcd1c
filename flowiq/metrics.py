"""Prometheus collectors shared across the service modules."""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, Histogram


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "flowiq_http_requests_total",
    "Total HTTP requests processed by the API",
    ("method", "endpoint", "status"),
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "flowiq_http_request_latency_seconds",
    "Latency of HTTP requests",
    ("method", "endpoint"),
)
PHI_ANONYMIZATIONS = _get_or_create_metric(
    Counter,
    "flowiq_phi_anonymizations_total",
    "Records passed through the PHI anonymizer",
    ("sensitivity",),
)
AI_REQUESTS = _get_or_create_metric(
    Counter,
    "flowiq_ai_requests_total",
    "AI service invocations routed through the PHI facade",
    ("service", "outcome"),
)
EHR_SYNC_RECORDS = _get_or_create_metric(
    Counter,
    "flowiq_ehr_sync_records_total",
    "Records processed by EHR synchronisation",
    ("system", "entity", "outcome"),
)
PAYMENTS_POSTED = _get_or_create_metric(
    Counter,
    "flowiq_payments_posted_total",
    "Payments recorded from remittance files or manual posting",
    ("mode",),
)
COMMUNICATIONS_SENT = _get_or_create_metric(
    Counter,
    "flowiq_communications_sent_total",
    "Patient communications dispatched",
    ("channel", "status"),
)


__all__ = [
    "AI_REQUESTS",
    "COMMUNICATIONS_SENT",
    "EHR_SYNC_RECORDS",
    "PAYMENTS_POSTED",
    "PHI_ANONYMIZATIONS",
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
]
