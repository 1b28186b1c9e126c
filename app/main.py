from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from app.api.metrics import router as metrics_router
from app.api.status import router as status_router
from app.config import get_settings
from app.observability.correlation import (
    CORRELATION_ID_HEADER,
    REQUEST_ID_HEADER,
    RESPONSE_CORRELATION_ID_HEADER,
    get_correlation_id,
    get_request_context,
)
from app.observability.logging import configure_logging
from app.observability.metrics import MetricsRegistry, init_metrics
from app.observability.middleware import RequestInstrumentationMiddleware


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    log = structlog.get_logger("app")
    log.info("service_started", version=settings.service_version)
    log.info("metrics_available", url=f"http://localhost:{settings.port}/metrics")
    log.info("correlation_headers", headers=[REQUEST_ID_HEADER, CORRELATION_ID_HEADER])
    yield
    log.info("server_stopped")


async def _unhandled_error(request: Request, exc: Exception) -> PlainTextResponse:
    # Runs in Starlette's outermost error layer, after the middleware re-raised.
    correlation_id = get_correlation_id(get_request_context(request))
    headers = {RESPONSE_CORRELATION_ID_HEADER: correlation_id} if correlation_id else None
    return PlainTextResponse("Internal Server Error", status_code=500, headers=headers)


def create_app(metrics: MetricsRegistry | None = None) -> FastAPI:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    if metrics is None:
        metrics = init_metrics()

    app = FastAPI(title="Pong Service", version=settings.service_version, lifespan=_lifespan)
    app.state.metrics = metrics
    app.include_router(status_router)
    app.include_router(metrics_router)
    app.add_middleware(RequestInstrumentationMiddleware, metrics=metrics)
    app.add_exception_handler(Exception, _unhandled_error)
    return app


app = create_app()
