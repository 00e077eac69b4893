"""
webtrace.tracing.provider

OpenTelemetry tracer provider bootstrap.

Responsibilities:
- Build a `TracerProvider` tagged with the service name.
- Attach the exporter selected in settings.
"""

from __future__ import annotations

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from webtrace import __version__
from webtrace.settings import Settings


def create_tracer_provider(settings: Settings) -> TracerProvider:
    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": __version__,
            "deployment.environment": settings.env,
        }
    )
    provider = TracerProvider(resource=resource)
    if settings.exporter == "console":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    return provider


# --- Module Notes -----------------------------------------------------------
# The provider is returned rather than installed globally; callers that want the global
# provider call `opentelemetry.trace.set_tracer_provider` themselves.
