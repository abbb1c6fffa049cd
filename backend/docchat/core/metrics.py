"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

REQUEST_COUNT = Counter(
    "docchat_requests_total",
    "Total HTTP requests",
    labelnames=("endpoint", "method", "status"),
    registry=REGISTRY,
)

REQUEST_LATENCY = Histogram(
    "docchat_request_latency_seconds",
    "Latency of HTTP requests",
    labelnames=("endpoint", "method"),
    registry=REGISTRY,
)

INGEST_DURATION = Histogram(
    "docchat_ingest_duration_seconds",
    "Ingest pipeline duration",
    labelnames=("upload_type",),
    registry=REGISTRY,
)

INGEST_OUTCOMES = Counter(
    "docchat_ingest_outcomes_total",
    "Ingest runs by terminal status",
    labelnames=("action_type", "status"),
    registry=REGISTRY,
)

INGEST_JOBS_ACTIVE = Gauge(
    "docchat_ingest_jobs_active",
    "Ingest jobs currently running",
    registry=REGISTRY,
)

PROVIDER_RETRIES = Counter(
    "docchat_provider_retries_total",
    "Retried operations by classified error kind",
    labelnames=("operation", "kind"),
    registry=REGISTRY,
)

RATE_LIMIT_DENIALS = Counter(
    "docchat_rate_limit_denials_total",
    "Chat messages denied by the session rate limiter",
    labelnames=("reason",),
    registry=REGISTRY,
)

RETRIEVAL_LATENCY = Histogram(
    "docchat_retrieval_latency_seconds",
    "Latency of multi-document retrieval",
    registry=REGISTRY,
)

QUIZ_BATCHES = Counter(
    "docchat_quiz_batches_total",
    "Quiz generation batches by outcome",
    labelnames=("status",),
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "INGEST_DURATION",
    "INGEST_OUTCOMES",
    "INGEST_JOBS_ACTIVE",
    "PROVIDER_RETRIES",
    "RATE_LIMIT_DENIALS",
    "RETRIEVAL_LATENCY",
    "QUIZ_BATCHES",
    "metrics_response",
]
