"""
tests.conftest

Shared fixtures: an in-memory OpenTelemetry pipeline and a gateway that records calls.
"""

from __future__ import annotations

from typing import Any

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from webtrace.tracing.gateway import TracedSpan, TracingGateway

PARENT_TRACE_ID = "0af7651916cd43dd8448eb211c80319c"
PARENT_SPAN_ID = "b7ad6b7169203331"
TRACEPARENT = f"00-{PARENT_TRACE_ID}-{PARENT_SPAN_ID}-01"


class RecordingGateway(TracingGateway):
    """Real gateway that also keeps a log of lifecycle calls."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.calls: list[tuple[str, TracedSpan]] = []

    def extract_or_create(self, headers, *, name, method, path) -> TracedSpan:
        span = super().extract_or_create(headers, name=name, method=method, path=path)
        self.calls.append(("create", span))
        return span

    def finalize(self, status_code, exception, span) -> bool:
        self.calls.append(("finalize", span))
        return super().finalize(status_code, exception, span)

    def abandon(self, span) -> bool:
        self.calls.append(("abandon", span))
        return super().abandon(span)

    def verbs(self) -> list[str]:
        return [verb for verb, _ in self.calls]


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(exporter: InMemorySpanExporter) -> TracerProvider:
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return provider


@pytest.fixture
def gateway(tracer_provider: TracerProvider) -> RecordingGateway:
    return RecordingGateway(
        tracer_provider=tracer_provider,
        propagator=TraceContextTextMapPropagator(),
    )
