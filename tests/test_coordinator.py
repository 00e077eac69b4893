"""
tests.test_coordinator

Coordinator behaviour across first pass, error re-dispatch and async hand-off.

Each test drives `TraceCoordinator.handle` directly with an `HttpExchange`; the chain is a
plain coroutine standing in for the downstream app.
"""

from __future__ import annotations

import pytest
from opentelemetry import context as otel_context
from opentelemetry import trace

from conftest import PARENT_TRACE_ID, TRACEPARENT
from webtrace.tracing.context_store import RequestState
from webtrace.tracing.coordinator import HttpExchange, TraceCoordinator
from webtrace.tracing.gateway import HTTP_STATUS_CODE, SpanState


def _coordinator(gateway, *, error_handler: bool = False) -> TraceCoordinator:
    return TraceCoordinator(gateway=gateway, error_handler_lookup=lambda: error_handler)


def _exchange(headers=None, attributes=None, status_code: int = 0) -> HttpExchange:
    return HttpExchange(
        method="GET",
        path="/orders",
        headers=headers or {},
        attributes=attributes if attributes is not None else {},
        status_code=status_code,
    )


def _respond(exchange: HttpExchange, status_code: int):
    async def chain() -> None:
        exchange.status_code = status_code

    return chain


def _fail(exc: Exception):
    async def chain() -> None:
        raise exc

    return chain


@pytest.mark.asyncio
async def test_successful_root_request_is_finalized_and_tagged(gateway, exporter) -> None:
    exchange = _exchange()
    await _coordinator(gateway).handle(exchange, _respond(exchange, 200))

    assert gateway.verbs() == ["create", "finalize"]
    (exported,) = exporter.get_finished_spans()
    assert exported.name == "http:/orders"
    assert exported.attributes[HTTP_STATUS_CODE] == "200"
    store = exchange.store
    assert store.get_active_span() is None
    assert store.is_already_finalized()


@pytest.mark.asyncio
async def test_successful_child_request_has_no_status_tag(gateway, exporter) -> None:
    exchange = _exchange(headers={"traceparent": TRACEPARENT})
    await _coordinator(gateway).handle(exchange, _respond(exchange, 200))

    (exported,) = exporter.get_finished_spans()
    assert format(exported.context.trace_id, "032x") == PARENT_TRACE_ID
    assert HTTP_STATUS_CODE not in exported.attributes
    assert exchange.store.get_active_span() is None


@pytest.mark.asyncio
async def test_span_is_current_while_chain_runs(gateway) -> None:
    exchange = _exchange()
    seen = []

    async def chain() -> None:
        seen.append(trace.get_current_span())
        exchange.status_code = 200

    await _coordinator(gateway).handle(exchange, chain)

    (created,) = [span for verb, span in gateway.calls if verb == "create"]
    assert seen == [created.span]
    assert trace.get_current_span() is not created.span


@pytest.mark.asyncio
async def test_existing_span_is_continued_not_created(gateway, exporter) -> None:
    attrs: dict = {}
    span = gateway.extract_or_create({}, name="http:/orders", method="GET", path="/orders")
    # Re-entrant dispatch of a request that already has a (successful) status.
    exchange = _exchange(attributes=attrs, status_code=200)
    exchange.store.set_active_span(span)
    gateway.calls.clear()

    await _coordinator(gateway).handle(exchange, _respond(exchange, 200))

    assert gateway.verbs() == ["finalize"]
    assert gateway.calls[0][1] is span
    assert exchange.store.request_state is RequestState.continued
    assert len(exporter.get_finished_spans()) == 1


@pytest.mark.asyncio
async def test_async_request_is_left_open_for_continuation(gateway, exporter) -> None:
    coordinator = _coordinator(gateway)
    exchange = _exchange()
    continuations = []

    async def chain() -> None:
        continuations.append(coordinator.start_async(exchange.store))
        exchange.status_code = 200

    await coordinator.handle(exchange, chain)

    assert gateway.verbs() == ["create"]
    span = exchange.store.get_active_span()
    assert span is not None and span.state is SpanState.open
    assert exporter.get_finished_spans() == ()

    (continuation,) = continuations
    assert continuation.complete(200) is True
    assert continuation.complete(200) is False
    assert gateway.verbs() == ["create", "finalize"]
    (exported,) = exporter.get_finished_spans()
    assert exported.attributes[HTTP_STATUS_CODE] == "200"
    assert exchange.store.get_active_span() is None


@pytest.mark.asyncio
async def test_async_request_that_fails_is_still_left_open(gateway) -> None:
    coordinator = _coordinator(gateway)
    exchange = _exchange()

    async def chain() -> None:
        coordinator.start_async(exchange.store)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await coordinator.handle(exchange, chain)

    assert gateway.verbs() == ["create"]


@pytest.mark.asyncio
async def test_failure_without_error_handler_finalizes_once(gateway, exporter) -> None:
    exchange = _exchange(headers={"traceparent": TRACEPARENT})
    exc = RuntimeError("boom")

    with pytest.raises(RuntimeError) as raised:
        await _coordinator(gateway).handle(exchange, _fail(exc))

    assert raised.value is exc
    assert gateway.verbs() == ["create", "finalize"]
    assert exchange.store.get_active_span() is None
    assert exchange.store.peek_pending_exception() is exc
    (exported,) = exporter.get_finished_spans()
    assert [event.name for event in exported.events] == ["exception"]


@pytest.mark.asyncio
async def test_unsuccessful_root_request_is_tagged_with_status(gateway, exporter) -> None:
    exchange = _exchange()
    await _coordinator(gateway).handle(exchange, _respond(exchange, 404))

    assert gateway.verbs() == ["create", "finalize"]
    (exported,) = exporter.get_finished_spans()
    assert exported.attributes[HTTP_STATUS_CODE] == "404"


@pytest.mark.asyncio
async def test_failure_with_error_handler_abandons_then_redispatch_finalizes(
    gateway, exporter
) -> None:
    coordinator = _coordinator(gateway, error_handler=True)
    attrs: dict = {}
    exc = RuntimeError("boom")

    first = _exchange(headers={"traceparent": TRACEPARENT}, attributes=attrs)
    with pytest.raises(RuntimeError):
        await coordinator.handle(first, _fail(exc))

    assert gateway.verbs() == ["create", "abandon"]
    assert exporter.get_finished_spans() == ()
    assert first.store.get_active_span() is not None
    assert first.store.peek_pending_exception() is exc

    # The host re-dispatches the same request to its error handler with a 500 status.
    error_pass = _exchange(headers={"traceparent": TRACEPARENT}, attributes=attrs, status_code=500)
    await coordinator.handle(error_pass, _respond(error_pass, 500))

    assert gateway.verbs() == ["create", "abandon", "finalize"]
    assert error_pass.store.is_error_handled()
    assert error_pass.store.peek_pending_exception() is None
    (exported,) = exporter.get_finished_spans()
    assert format(exported.context.trace_id, "032x") == PARENT_TRACE_ID
    assert exported.attributes[HTTP_STATUS_CODE] == "500"
    assert [event.name for event in exported.events] == ["exception"]


@pytest.mark.asyncio
async def test_root_failure_with_error_handler_is_not_reported_twice(gateway, exporter) -> None:
    coordinator = _coordinator(gateway, error_handler=True)
    attrs: dict = {}

    with pytest.raises(RuntimeError):
        await coordinator.handle(_exchange(attributes=attrs), _fail(RuntimeError("boom")))
    error_pass = _exchange(attributes=attrs, status_code=500)
    await coordinator.handle(error_pass, _respond(error_pass, 500))

    assert gateway.verbs() == ["create", "finalize"]
    assert len(exporter.get_finished_spans()) == 1


@pytest.mark.asyncio
async def test_error_handler_that_reports_span_itself(gateway, exporter) -> None:
    coordinator = _coordinator(gateway, error_handler=True)
    attrs: dict = {}
    with pytest.raises(RuntimeError):
        await coordinator.handle(
            _exchange(headers={"traceparent": TRACEPARENT}, attributes=attrs),
            _fail(RuntimeError("boom")),
        )

    error_pass = _exchange(attributes=attrs, status_code=500)

    async def error_handler() -> None:
        error_pass.store.mark_error_span_reported()
        error_pass.status_code = 500

    await coordinator.handle(error_pass, error_handler)

    assert gateway.verbs() == ["create", "abandon"]
    assert error_pass.store.is_error_handled()


@pytest.mark.asyncio
async def test_error_handler_that_goes_async_leaves_span_to_continuation(
    gateway, exporter
) -> None:
    coordinator = _coordinator(gateway, error_handler=True)
    attrs: dict = {}
    with pytest.raises(RuntimeError):
        await coordinator.handle(
            _exchange(headers={"traceparent": TRACEPARENT}, attributes=attrs),
            _fail(RuntimeError("boom")),
        )

    error_pass = _exchange(attributes=attrs, status_code=500)
    continuations = []

    async def error_handler() -> None:
        continuations.append(coordinator.start_async(error_pass.store))
        error_pass.status_code = 500

    await coordinator.handle(error_pass, error_handler)

    assert gateway.verbs() == ["create", "abandon"]
    assert exporter.get_finished_spans() == ()
    assert error_pass.store.is_error_handled()

    (continuation,) = continuations
    assert continuation.complete(500) is True
    assert gateway.verbs() == ["create", "abandon", "finalize"]
    (exported,) = exporter.get_finished_spans()
    assert exported.attributes[HTTP_STATUS_CODE] == "500"


@pytest.mark.asyncio
async def test_close_request_forces_finalize(gateway, exporter) -> None:
    exchange = _exchange(headers={"traceparent": TRACEPARENT})

    async def chain() -> None:
        exchange.store.request_close()
        exchange.status_code = 503

    await _coordinator(gateway, error_handler=True).handle(exchange, chain)

    assert gateway.verbs() == ["create", "finalize"]
    assert exchange.store.get_active_span() is None


@pytest.mark.asyncio
async def test_stale_root_span_is_handed_to_error_handler(gateway, exporter) -> None:
    other = gateway.extract_or_create({}, name="other", method="GET", path="/other")
    gateway.calls.clear()
    exchange = _exchange()

    async def chain() -> None:
        # Downstream swaps the current span and never restores it.
        otel_context.attach(trace.set_span_in_context(other.span))
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await _coordinator(gateway, error_handler=True).handle(exchange, chain)

    assert gateway.verbs() == ["create", "abandon"]
    assert exporter.get_finished_spans() == ()


@pytest.mark.asyncio
async def test_scope_is_released_when_chain_fails(gateway) -> None:
    before = trace.get_current_span()
    with pytest.raises(RuntimeError):
        await _coordinator(gateway).handle(_exchange(), _fail(RuntimeError("boom")))
    assert trace.get_current_span() is before


@pytest.mark.asyncio
async def test_error_handler_lookup_is_resolved_once(gateway) -> None:
    lookups = []

    def lookup() -> bool:
        lookups.append(1)
        return False

    coordinator = TraceCoordinator(gateway=gateway, error_handler_lookup=lookup)
    for _ in range(3):
        exchange = _exchange()
        await coordinator.handle(exchange, _respond(exchange, 500))

    assert len(lookups) == 1


@pytest.mark.asyncio
async def test_third_invocation_after_error_handling_leaves_span_alone(gateway) -> None:
    coordinator = _coordinator(gateway, error_handler=True)
    attrs: dict = {}
    with pytest.raises(RuntimeError):
        await coordinator.handle(
            _exchange(headers={"traceparent": TRACEPARENT}, attributes=attrs),
            _fail(RuntimeError("boom")),
        )
    error_pass = _exchange(attributes=attrs, status_code=500)
    await coordinator.handle(error_pass, _respond(error_pass, 500))

    # A later successful dispatch of the same request (e.g. a forward) must not report again.
    forward = _exchange(attributes=attrs, status_code=200)
    await coordinator.handle(forward, _respond(forward, 200))

    assert gateway.verbs() == ["create", "abandon", "finalize"]
