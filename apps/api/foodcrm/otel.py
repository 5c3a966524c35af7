from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter


_state: dict[str, Any] = {"provider": None, "exporters_attached": False}


def _provider_for(service_name: str) -> TracerProvider:
    provider = _state["provider"]
    if provider is None:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
                "deployment.environment": os.getenv("APP_ENV", "local"),
            }
        )
        provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(provider)
        _state["provider"] = provider
    return provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    """Install the tracer provider and its exporters once per process.

    OTLP export is used when OTEL_EXPORTER_OTLP_ENDPOINT is set; console export
    is opt-in through OTEL_CONSOLE_EXPORTER=true.
    """
    if not enable:
        return None

    provider = _provider_for(service_name)
    if _state["exporters_attached"]:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _state["exporters_attached"] = True
    return provider


def setup_inmemory_otel(service_name: str = "foodcrm-api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
        forwarded = headers.get(b"x-forwarded-for")
        if forwarded:
            span.set_attribute("client.address", forwarded.decode("utf-8").split(",")[0].strip())

    return server_request_hook
