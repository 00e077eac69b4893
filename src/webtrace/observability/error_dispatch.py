"""
webtrace.observability.error_dispatch

Error re-dispatch for ASGI apps.

Responsibilities:
- Catch a failure raised by the inner app before any response was sent.
- Re-invoke the inner app on the application's error route, sharing the request state,
  so the trace middleware sees the same request a second time (the error pass).
"""

from __future__ import annotations

from typing import Any

from starlette.routing import Match
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from webtrace.observability.logging import get_logger

log = get_logger(__name__)

ERROR_STATUS_SCOPE_KEY = "webtrace.error_status"
ERROR_EXCEPTION_SCOPE_KEY = "webtrace.error_exception"
ERROR_ORIGINAL_PATH_SCOPE_KEY = "webtrace.error_original_path"

# Routing results from the failed pass; the router recomputes them for the error path.
_ROUTING_SCOPE_KEYS = ("endpoint", "route", "path_params")


def has_route(app: Any, path: str) -> bool:
    """Whether any route of `app` serves `path` (included routers and mounts too)."""

    route_scope = {"type": "http", "path": path, "method": "GET", "root_path": "", "headers": []}
    # PARTIAL: the path exists but is registered for other methods only.
    return any(
        route.matches(route_scope)[0] is not Match.NONE for route in getattr(app, "routes", ())
    )


class ErrorDispatchMiddleware:
    """
    Plays the servlet container's role for uncaught failures.

    Without an error route the failure propagates unchanged to Starlette's own
    `ServerErrorMiddleware`.
    """

    def __init__(self, app: ASGIApp, *, error_path: str = "/error") -> None:
        self.app = app
        self.error_path = error_path

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or ERROR_STATUS_SCOPE_KEY in scope:
            await self.app(scope, receive, send)
            return

        # Both passes must see the very same state dict.
        scope.setdefault("state", {})
        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            if response_started or not has_route(scope.get("app"), self.error_path):
                raise
            log.info(
                "error_redispatch",
                path=scope["path"],
                error_path=self.error_path,
                error=type(exc).__name__,
            )
            await self.app(self._error_scope(scope, exc), receive, send)

    def _error_scope(self, scope: Scope, exc: Exception) -> Scope:
        error_scope = {k: v for k, v in scope.items() if k not in _ROUTING_SCOPE_KEYS}
        error_scope.update(
            {
                "path": self.error_path,
                "raw_path": self.error_path.encode("latin-1"),
                "query_string": b"",
                ERROR_STATUS_SCOPE_KEY: 500,
                ERROR_EXCEPTION_SCOPE_KEY: exc,
                ERROR_ORIGINAL_PATH_SCOPE_KEY: scope["path"],
            }
        )
        return error_scope


# --- Module Notes -----------------------------------------------------------
# A failure raised by the error route itself is not re-dispatched again; it reaches
# ServerErrorMiddleware like any other unhandled exception.
