"""Optional tracing (OpenTelemetry) and metrics (Prometheus).

Enabled through the environment:
- ENABLE_OTEL=true exports spans over OTLP/HTTP to OTEL_EXPORTER_OTLP_ENDPOINT
- ENABLE_METRICS=true exposes /metrics via prometheus-fastapi-instrumentator
"""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes"}


def _enabled(name: str) -> bool:
    return os.environ.get(name, "false").lower() in _TRUTHY


def setup_observability(app: FastAPI, *, service_name: str) -> None:
    if _enabled("ENABLE_OTEL"):
        try:
            _enable_tracing(app, service_name)
        except ImportError:
            logger.warning("ENABLE_OTEL is set but opentelemetry packages are missing")
    if _enabled("ENABLE_METRICS"):
        try:
            _enable_metrics(app)
        except ImportError:
            logger.warning("ENABLE_METRICS is set but prometheus-fastapi-instrumentator is missing")


def _enable_tracing(app: FastAPI, service_name: str) -> None:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or "http://localhost:4318"
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)
    logger.info("Tracing enabled for %s -> %s", service_name, endpoint)


def _enable_metrics(app: FastAPI) -> None:
    from prometheus_fastapi_instrumentator import Instrumentator

    Instrumentator().instrument(app).expose(app)
