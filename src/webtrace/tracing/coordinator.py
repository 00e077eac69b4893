"""
webtrace.tracing.coordinator

Request-scoped span coordinator.

Responsibilities:
- Create (or continue) the span of an inbound request and keep it current while the
  downstream chain runs.
- Handle the error re-dispatch pass for a request whose first pass failed.
- Apply exactly one terminal disposition per request span via the decision engine.
- Hand completion over to an `AsyncContinuation` when the request continues asynchronously.

The coordinator is host-agnostic: it sees an `HttpExchange` and an awaitable chain. The
Starlette adapter lives in `webtrace.observability.middleware`.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

from webtrace.observability.logging import get_logger
from webtrace.tracing.context_store import RequestContextStore
from webtrace.tracing.decision import SpanOutcome, Verdict, decide, is_successful_status
from webtrace.tracing.gateway import (
    HTTP_STATUS_CODE,
    ScopeHandle,
    SpanState,
    TracedSpan,
    TracingGateway,
)

log = get_logger(__name__)

Chain = Callable[[], Awaitable[None]]


@dataclass(slots=True)
class HttpExchange:
    """
    The coordinator's view of one request/response pair.

    `status_code` is written by the chain (0 until a response status is known).
    `attributes` is the host's per-request attribute mapping; it must be the same object
    for every invocation that belongs to the same underlying request.
    """

    method: str
    path: str
    headers: Mapping[str, str]
    attributes: MutableMapping[str, Any] = field(default_factory=dict)
    status_code: int = 0

    @property
    def store(self) -> RequestContextStore:
        return RequestContextStore(self.attributes)


class AsyncContinuation:
    """
    Completion handle for a request that keeps running after the coordinator returns.

    Exactly one of `complete` / `abandon` takes effect; later calls are ignored.
    """

    def __init__(self, *, gateway: TracingGateway, store: RequestContextStore) -> None:
        self._gateway = gateway
        self._store = store
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def complete(self, status_code: int, exception: BaseException | None = None) -> bool:
        span = self._claim()
        if span is None:
            return False
        if exception is None and self._store.is_span_without_parent() and status_code >= 100:
            span.tag(HTTP_STATUS_CODE, str(status_code))
        finalized = self._gateway.finalize(status_code, exception, span)
        if finalized:
            self._store.mark_already_finalized()
        return finalized

    def abandon(self) -> bool:
        span = self._claim()
        if span is None:
            return False
        return self._gateway.abandon(span)

    def _claim(self) -> TracedSpan | None:
        if self._done:
            log.warning("async_continuation_already_done")
            return None
        self._done = True
        span = self._store.get_active_span()
        if span is None:
            log.warning("async_continuation_without_span")
            return None
        self._store.clear_active_span()
        self._store.take_pending_exception()
        return span


class TraceCoordinator:
    def __init__(
        self,
        *,
        gateway: TracingGateway,
        error_handler_lookup: Callable[[], bool],
        span_name_prefix: str = "http",
    ) -> None:
        self._gateway = gateway
        self._error_handler_lookup = error_handler_lookup
        self._span_name_prefix = span_name_prefix
        self._has_error_handler: bool | None = None

    @property
    def gateway(self) -> TracingGateway:
        return self._gateway

    def has_error_handler(self) -> bool:
        # Resolved on first use and cached for the life of the coordinator.
        if self._has_error_handler is None:
            self._has_error_handler = bool(self._error_handler_lookup())
        return self._has_error_handler

    def start_async(self, store: RequestContextStore) -> AsyncContinuation:
        """Mark the request as continuing asynchronously and return its completion handle."""

        store.start_async()
        return AsyncContinuation(gateway=self._gateway, store=store)

    async def handle(self, exchange: HttpExchange, chain: Chain) -> None:
        store = exchange.store
        span_from_request = store.get_active_span()
        scope: ScopeHandle | None = None
        if span_from_request is not None:
            scope = self._continue_span(store, span_from_request)
        log.debug("request_received", path=exchange.path, method=exchange.method)

        # A failed request re-dispatched by the host: the error handler closes the span.
        if span_from_request is not None and not is_successful_status(exchange.status_code):
            await self._process_error_request(exchange, chain, span_from_request, scope)
            return

        span: TracedSpan | None = None
        exception: BaseException | None = None
        try:
            span, scope = self._create_span(exchange, store, span_from_request, scope)
            await chain()
        except Exception as exc:
            exception = exc
            log.error("uncaught_exception", path=exchange.path, exc_info=exc)
            store.set_pending_exception(exc)
            raise
        finally:
            try:
                if store.is_async_started():
                    log.debug("span_left_for_async", span=repr(span))
                elif span is not None:
                    self._detach_or_close(exchange, store, span, exception)
            finally:
                if scope is not None:
                    scope.close()

    def _continue_span(self, store: RequestContextStore, span: TracedSpan) -> ScopeHandle:
        store.mark_span_continued()
        log.debug("span_continued", trace_id=span.trace_id, span_id=span.span_id)
        return self._gateway.activate(span)

    def _create_span(
        self,
        exchange: HttpExchange,
        store: RequestContextStore,
        span_from_request: TracedSpan | None,
        scope: ScopeHandle | None,
    ) -> tuple[TracedSpan, ScopeHandle]:
        if span_from_request is not None and scope is not None:
            log.debug("span_reused", trace_id=span_from_request.trace_id)
            return span_from_request, scope
        span = self._gateway.extract_or_create(
            exchange.headers,
            name=f"{self._span_name_prefix}:{exchange.path}",
            method=exchange.method,
            path=exchange.path,
        )
        store.set_active_span(span)
        if span.is_root:
            store.mark_span_without_parent()
        return span, self._gateway.activate(span)

    async def _process_error_request(
        self,
        exchange: HttpExchange,
        chain: Chain,
        span: TracedSpan,
        scope: ScopeHandle | None,
    ) -> None:
        store = exchange.store
        log.debug("error_redispatch", trace_id=span.trace_id, span_id=span.span_id)
        try:
            await chain()
        finally:
            try:
                store.mark_error_handled()
                if store.is_async_started():
                    log.debug("span_left_for_async", trace_id=span.trace_id, span_id=span.span_id)
                elif not (store.is_error_span_reported() or store.is_already_finalized()):
                    finalized = self._gateway.finalize(
                        exchange.status_code, store.take_pending_exception(), span
                    )
                    if finalized:
                        store.mark_already_finalized()
            finally:
                if scope is not None:
                    scope.close()

    def _detach_or_close(
        self,
        exchange: HttpExchange,
        store: RequestContextStore,
        span: TracedSpan,
        exception: BaseException | None,
    ) -> None:
        outcome = SpanOutcome(
            status_code=exchange.status_code,
            async_started=False,
            already_finalized=store.is_already_finalized(),
            error_handled=store.is_error_handled(),
            should_close=store.should_close(),
            has_error_handler=self.has_error_handler(),
            still_current=self._gateway.current_span_is(span),
            root_span=span.is_root,
            span_without_parent=store.is_span_without_parent(),
            has_exception=exception is not None,
        )
        decision = decide(outcome)
        log.debug(
            "span_decision",
            verdict=decision.verdict,
            reason=decision.reason,
            status_code=exchange.status_code,
            trace_id=span.trace_id,
            span_id=span.span_id,
        )

        if decision.tag_status and span.state is not SpanState.finalized:
            span.tag(HTTP_STATUS_CODE, str(exchange.status_code))
        if decision.clear_active_span:
            store.clear_active_span()

        if decision.verdict is Verdict.finalize:
            if self._gateway.finalize(exchange.status_code, exception, span):
                store.mark_already_finalized()
                if exception is None:
                    store.take_pending_exception()
        elif decision.verdict is Verdict.abandon:
            self._gateway.abandon(span)


# --- Module Notes -----------------------------------------------------------
# Only `Exception` is recorded as a pending failure; cancellation and other BaseException
# subclasses still release the scope but leave no pending exception behind.
