from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from doula_crm.core.config import Settings, get_settings

# Request headers copied onto the server span as attributes.
_SPAN_HEADERS = {
    b"x-correlation-id": "correlation_id",
    b"x-organization-id": "organization_id",
}

_provider: TracerProvider | None = None
_exporters_attached = False


def _tracer_provider(settings: Settings) -> TracerProvider:
    """Return the process-wide provider, installing it globally on first use."""
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings | None = None) -> TracerProvider | None:
    global _exporters_attached

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(settings)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(get_settings()).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        for raw_name, raw_value in scope.get("headers", []):
            attribute = _SPAN_HEADERS.get(raw_name.lower())
            if attribute and raw_value:
                span.set_attribute(attribute, raw_value.decode("latin-1"))

    return server_request_hook
