"""
webtrace.tracing

Span lifecycle core.

Responsibilities:
- Request context store (`context_store`), decision engine (`decision`),
  OpenTelemetry gateway (`gateway`) and the coordinator tying them together.
"""

from webtrace.tracing.context_store import RequestContextStore, RequestState
from webtrace.tracing.coordinator import AsyncContinuation, HttpExchange, TraceCoordinator
from webtrace.tracing.decision import Decision, SpanOutcome, Verdict, decide
from webtrace.tracing.gateway import ScopeHandle, SpanState, TracedSpan, TracingGateway

__all__ = [
    "AsyncContinuation",
    "Decision",
    "HttpExchange",
    "RequestContextStore",
    "RequestState",
    "ScopeHandle",
    "SpanOutcome",
    "SpanState",
    "TraceCoordinator",
    "TracedSpan",
    "TracingGateway",
    "Verdict",
    "decide",
]
