"""
webtrace.api.routers.errors

Error route targeted by the error re-dispatch.

Responsibilities:
- Render a JSON body for a request whose first pass failed.
- Act as the application's dedicated error-handling component for tracing purposes.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from webtrace.observability.error_dispatch import (
    ERROR_ORIGINAL_PATH_SCOPE_KEY,
    ERROR_STATUS_SCOPE_KEY,
)
from webtrace.observability.middleware import request_context

_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def build_router(*, error_path: str) -> APIRouter:
    router = APIRouter()

    @router.api_route(error_path, methods=_METHODS, include_in_schema=False)
    async def error_page(request: Request) -> JSONResponse:
        status_code = request.scope.get(ERROR_STATUS_SCOPE_KEY, 500)
        # Peek only: the trace middleware takes the exception when it finalizes the span.
        exc = request_context(request).peek_pending_exception()
        return JSONResponse(
            status_code=status_code,
            content={
                "status": status_code,
                "error": type(exc).__name__ if exc is not None else "Internal Server Error",
                "path": request.scope.get(ERROR_ORIGINAL_PATH_SCOPE_KEY, request.url.path),
            },
        )

    return router


# --- Module Notes -----------------------------------------------------------
# Reached directly (not via re-dispatch) the route still answers, with a 500 status.
