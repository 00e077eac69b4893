"""
webtrace.api.app

App composition for traced services.

Responsibilities:
- `instrument_app`: install the trace and error re-dispatch middleware in the right order.
- `create_app`: a small traced FastAPI service (health + error routes) used as the
  runnable entrypoint and in end-to-end tests.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry import trace

from webtrace import __version__
from webtrace.api.routers.errors import build_router as build_errors_router
from webtrace.api.routers.health import router as health_router
from webtrace.observability.error_dispatch import ErrorDispatchMiddleware
from webtrace.observability.logging import configure_logging, get_logger
from webtrace.observability.middleware import TraceMiddleware
from webtrace.settings import Settings
from webtrace.tracing.gateway import TracingGateway
from webtrace.tracing.provider import create_tracer_provider

log = get_logger(__name__)


def instrument_app(
    app: FastAPI,
    *,
    settings: Settings,
    tracer_provider: trace.TracerProvider | None = None,
) -> TracingGateway:
    """
    Register tracing on `app`.

    Middleware added last runs first, so the error re-dispatch wraps the trace middleware
    and a failed request passes through the trace middleware a second time.
    """

    gateway = TracingGateway(tracer_provider=tracer_provider)
    app.add_middleware(TraceMiddleware, settings=settings, gateway=gateway)
    app.add_middleware(ErrorDispatchMiddleware, error_path=settings.error_path)
    return gateway


def create_app(
    *,
    settings: Settings,
    tracer_provider: trace.TracerProvider | None = None,
) -> FastAPI:
    configure_logging(service_name=settings.service_name, level=settings.log_level)

    provider = tracer_provider or create_tracer_provider(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        log.info("startup", env=settings.env, exporter=settings.exporter)
        yield
        # Flush spans still buffered in batch processors.
        shutdown = getattr(provider, "shutdown", None)
        if shutdown is not None:
            shutdown()
        log.info("shutdown")

    app = FastAPI(
        title="webtrace",
        version=__version__,
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    instrument_app(app, settings=settings, tracer_provider=provider)
    app.include_router(health_router, tags=["health"])
    app.include_router(build_errors_router(error_path=settings.error_path), tags=["errors"])

    return app


# --- Module Notes -----------------------------------------------------------
# Applications embedding webtrace call `instrument_app` from their own factory and
# register their own route at `settings.error_path` if they want error re-dispatch.
