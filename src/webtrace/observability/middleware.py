"""
webtrace.observability.middleware

HTTP middleware that runs every request through the span coordinator.

Responsibilities:
- Build the coordinator's `HttpExchange` from a Starlette request.
- Bind request metadata into structlog contextvars for the duration of the request.
- Resolve whether the host app registers an error route (cached by the coordinator).
- Expose helpers for downstream code: the request's context store and async hand-off.
"""

from __future__ import annotations

from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import HTTPConnection, Request
from starlette.responses import Response
from starlette.types import ASGIApp

from webtrace.observability.error_dispatch import ERROR_STATUS_SCOPE_KEY, has_route
from webtrace.settings import Settings
from webtrace.tracing.context_store import RequestContextStore
from webtrace.tracing.coordinator import AsyncContinuation, HttpExchange, TraceCoordinator
from webtrace.tracing.gateway import TracingGateway

COORDINATOR_SCOPE_KEY = "webtrace.coordinator"


class TraceMiddleware(BaseHTTPMiddleware):
    """
    - Creates or continues the request span
    - Lets the coordinator finalize, abandon or defer it once the response is known
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        settings: Settings,
        gateway: TracingGateway | None = None,
    ) -> None:
        super().__init__(app)
        self._error_path = settings.error_path
        self._host_app: Any = None
        self._coordinator = TraceCoordinator(
            gateway=gateway or TracingGateway(),
            error_handler_lookup=self._has_error_route,
            span_name_prefix=settings.span_name_prefix,
        )

    @property
    def coordinator(self) -> TraceCoordinator:
        return self._coordinator

    def _has_error_route(self) -> bool:
        return has_route(self._host_app, self._error_path)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self._host_app is None:
            # Starlette stores the outermost application in the scope.
            self._host_app = request.scope.get("app")
        request.scope[COORDINATOR_SCOPE_KEY] = self._coordinator

        exchange = HttpExchange(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            attributes=request.scope.setdefault("state", {}),
            status_code=request.scope.get(ERROR_STATUS_SCOPE_KEY, 0),
        )
        response: Response | None = None

        async def chain() -> None:
            nonlocal response
            response = await call_next(request)
            exchange.status_code = response.status_code

        with structlog.contextvars.bound_contextvars(
            path=exchange.path,
            method=exchange.method,
        ):
            await self._coordinator.handle(exchange, chain)

        if response is None:
            raise RuntimeError("downstream app returned no response")
        return response


def request_context(conn: HTTPConnection) -> RequestContextStore:
    """The trace bookkeeping of the current request (same data the coordinator sees)."""

    return RequestContextStore(conn.scope.setdefault("state", {}))


def start_async(conn: HTTPConnection) -> AsyncContinuation:
    """
    Declare that the request completes after the endpoint returns.

    The trace middleware leaves the span open; the caller must eventually call
    `complete()` or `abandon()` on the returned handle.
    """

    coordinator: TraceCoordinator | None = conn.scope.get(COORDINATOR_SCOPE_KEY)
    if coordinator is None:
        raise RuntimeError("TraceMiddleware is not installed on this application")
    return coordinator.start_async(request_context(conn))


# --- Module Notes -----------------------------------------------------------
# `call_next` re-raises failures from the downstream app, so the coordinator observes
# them as chain exceptions and the error re-dispatch middleware sees them afterwards.
