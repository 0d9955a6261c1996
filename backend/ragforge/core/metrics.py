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
    "ragf_requests_total",
    "Total HTTP requests",
    labelnames=("endpoint", "method", "status"),
    registry=REGISTRY,
)

JOB_EVENTS = Counter(
    "ragf_job_events_total",
    "Job queue state transitions",
    labelnames=("job_type", "event"),
    registry=REGISTRY,
)

INGEST_DURATION = Histogram(
    "ragf_ingest_duration_seconds",
    "Ingest pipeline duration per document",
    labelnames=("outcome",),
    registry=REGISTRY,
)

EMBEDDING_FAILURES = Counter(
    "ragf_embedding_failures_total",
    "Chunks dropped because the embedding call failed",
    labelnames=("provider",),
    registry=REGISTRY,
)

GENERATION_TOKENS = Counter(
    "ragf_generation_tokens_total",
    "Tokens reported or estimated for generated answers",
    labelnames=("provider", "estimated"),
    registry=REGISTRY,
)

INDEX_SIZE = Gauge(
    "ragf_index_chunks",
    "Number of chunk rows stored in the vector store",
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "REQUEST_COUNT",
    "JOB_EVENTS",
    "INGEST_DURATION",
    "EMBEDDING_FAILURES",
    "GENERATION_TOKENS",
    "INDEX_SIZE",
    "metrics_response",
]
