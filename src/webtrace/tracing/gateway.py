"""
webtrace.tracing.gateway

Thin adapter between the coordinator and the OpenTelemetry tracer.

Responsibilities:
- Extract a parent context from inbound headers and start a server span (child or root).
- Make a span current for the duration of downstream processing (scope handles).
- Finalize (end + report) or abandon (drop without ending) spans, at most once.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.propagate import get_global_textmap
from opentelemetry.propagators.textmap import TextMapPropagator
from opentelemetry.trace import SpanKind, Status, StatusCode

from webtrace.observability.logging import get_logger
from webtrace.tracing.decision import is_successful_status

log = get_logger(__name__)

INSTRUMENTATION_NAME = "webtrace"

# The complete set of tags this package writes on a span.
HTTP_METHOD = "http.method"
HTTP_PATH = "http.path"
HTTP_STATUS_CODE = "http.status_code"


class SpanState(enum.StrEnum):
    open = "OPEN"
    abandoned = "ABANDONED"
    finalized = "FINALIZED"


@dataclass(slots=True, eq=False)
class TracedSpan:
    """
    Handle the coordinator keeps for one request span.

    `parent_span_id` is None for a root span (no parent in this trace).
    """

    span: trace.Span
    parent_span_id: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    state: SpanState = SpanState.open

    @property
    def context(self) -> trace.SpanContext:
        return self.span.get_span_context()

    @property
    def trace_id(self) -> str:
        return trace.format_trace_id(self.context.trace_id)

    @property
    def span_id(self) -> str:
        return trace.format_span_id(self.context.span_id)

    @property
    def is_root(self) -> bool:
        return self.parent_span_id is None

    def tag(self, key: str, value: str) -> None:
        self.tags[key] = value
        self.span.set_attribute(key, value)

    def __repr__(self) -> str:
        return f"TracedSpan(trace_id={self.trace_id}, span_id={self.span_id}, state={self.state})"


class ScopeHandle:
    """
    Keeps a span current in the OpenTelemetry context until closed.

    Closing twice is harmless; only the first close detaches.
    """

    __slots__ = ("_token", "_closed")

    def __init__(self, token: object) -> None:
        self._token = token
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        otel_context.detach(self._token)

    def __enter__(self) -> ScopeHandle:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class TracingGateway:
    def __init__(
        self,
        *,
        tracer_provider: trace.TracerProvider | None = None,
        propagator: TextMapPropagator | None = None,
    ) -> None:
        provider = tracer_provider or trace.get_tracer_provider()
        self._tracer = provider.get_tracer(INSTRUMENTATION_NAME)
        self._propagator = propagator or get_global_textmap()

    def extract_or_create(
        self,
        headers: Mapping[str, str],
        *,
        name: str,
        method: str,
        path: str,
    ) -> TracedSpan:
        # Start from an empty context so an ambient span never becomes the parent.
        ctx = self._propagator.extract(carrier=dict(headers), context=Context())
        parent = trace.get_current_span(ctx).get_span_context()
        span = self._tracer.start_span(name, context=ctx, kind=SpanKind.SERVER)
        traced = TracedSpan(
            span=span,
            parent_span_id=trace.format_span_id(parent.span_id) if parent.is_valid else None,
        )
        traced.tag(HTTP_METHOD, method)
        traced.tag(HTTP_PATH, path)
        log.debug(
            "span_started",
            trace_id=traced.trace_id,
            span_id=traced.span_id,
            parent_span_id=traced.parent_span_id,
        )
        return traced

    def activate(self, span: TracedSpan) -> ScopeHandle:
        return ScopeHandle(otel_context.attach(trace.set_span_in_context(span.span)))

    def current_span_is(self, span: TracedSpan) -> bool:
        return trace.get_current_span() is span.span

    def finalize(
        self, status_code: int, exception: BaseException | None, span: TracedSpan
    ) -> bool:
        """
        Report the span to the backend and end it.

        Returns False (and logs a warning) when the span was already finalized. An
        abandoned span can still be finalized: that is the error re-dispatch taking over.
        """

        if span.state is SpanState.finalized:
            log.warning("span_already_finalized", trace_id=span.trace_id, span_id=span.span_id)
            return False

        if exception is not None:
            span.span.record_exception(exception)
            span.span.set_status(Status(StatusCode.ERROR, type(exception).__name__))
        if status_code and not is_successful_status(status_code):
            span.tag(HTTP_STATUS_CODE, str(status_code))
            if exception is None and status_code >= 500:
                span.span.set_status(Status(StatusCode.ERROR))

        span.span.end()
        span.state = SpanState.finalized
        log.debug(
            "span_finalized",
            trace_id=span.trace_id,
            span_id=span.span_id,
            status_code=status_code,
            error=type(exception).__name__ if exception is not None else None,
        )
        return True

    def abandon(self, span: TracedSpan) -> bool:
        # An unended span is never handed to a span processor, so it is never exported.
        if span.state is not SpanState.open:
            if span.state is SpanState.finalized:
                log.warning("abandon_after_finalize", trace_id=span.trace_id, span_id=span.span_id)
            return False
        span.state = SpanState.abandoned
        log.debug("span_abandoned", trace_id=span.trace_id, span_id=span.span_id)
        return True


# --- Module Notes -----------------------------------------------------------
# Header lookup, trace-id format and export transport all belong to OpenTelemetry; the
# gateway only translates finalize/abandon into end()/no end().
