"""OpenTelemetry setup for the gateway, plus the tracer used around reconciliation."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from ledgerlink.common.config import settings


# Long-lived SSE connections and scrape/health-check traffic are not worth a span each.
UNTRACED_URLS = "health,metrics,events/stream"

tracer = trace.get_tracer("ledgerlink")


def setup_tracing(service_name: str) -> None:
    """Register an OTLP HTTP tracer provider unless tracing is switched off."""

    if not settings.tracing_enabled:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
    )
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    if not settings.tracing_enabled:
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)
