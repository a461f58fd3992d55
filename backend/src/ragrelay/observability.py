"""Observability helpers for tracing, metrics, and logging."""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from time import perf_counter

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Histogram

from .config import settings

logger = logging.getLogger("ragrelay")
logging.basicConfig(
    level=settings.observability.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s | %(message)s",
)

if settings.observability.enable_tracing:
    resource = Resource.create({"service.name": "ragrelay"})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.observability.otlp_endpoint))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
tracer = trace.get_tracer(__name__)

STAGE_LATENCY = Histogram(
    "ragrelay_stage_latency_ms",
    "Latency of pipeline stages",
    labelnames=("stage",),
    buckets=(5, 25, 50, 100, 250, 500, 1000, 2000, 5000, 15000),
)
DEGRADED_STAGES = Counter("ragrelay_degraded_stages", "Stages that failed open", labelnames=("stage", "kind"))
FAILED_REQUESTS = Counter("ragrelay_failed_requests", "Requests that ended in a reported error", labelnames=("kind",))
CONNECT_RETRIES = Counter("ragrelay_runner_connect_retries", "Connection retries against the LLM runner")
SOFT_MISSES = Counter("ragrelay_retrieval_soft_misses", "Index hits dropped because the store disagreed")
STREAMED_TOKENS = Counter("ragrelay_streamed_token_chunks", "Token chunks forwarded to callers")


@contextmanager
def traced_span(name: str, **attributes: str | int | float | bool) -> Iterator[None]:
    start = perf_counter()
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        try:
            yield
        finally:
            duration_ms = (perf_counter() - start) * 1000
            STAGE_LATENCY.labels(name).observe(duration_ms)


def record_degraded(stage: str, kind: str) -> None:
    DEGRADED_STAGES.labels(stage, kind).inc()


def record_failure(kind: str) -> None:
    FAILED_REQUESTS.labels(kind).inc()
