"""OpenTelemetry wiring: OTLP export, FastAPI spans and provider-call spans."""

from contextlib import contextmanager
from typing import Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from payroute.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Install an OTLP-exporting tracer provider unless tracing is disabled."""

    if not settings.otel_enabled:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def get_tracer(name: str = "payroute") -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def provider_span(tracer: trace.Tracer, provider: str, operation: str, attempt: int) -> Iterator[Span]:
    """Span for one provider attempt; a raised error marks it failed and propagates."""

    with tracer.start_as_current_span(
        f"provider.{operation}",
        attributes={"payroute.provider": provider, "payroute.operation": operation, "payroute.attempt": attempt},
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            raise
