from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from app.observability.correlation import get_correlation_id, get_request_context
from app.observability.middleware import log_with_correlation_id

router = APIRouter(tags=["status"])


@router.get("/", response_class=PlainTextResponse)
async def pong(request: Request) -> PlainTextResponse:
    log_with_correlation_id(get_request_context(request), "Processing pong request")
    return PlainTextResponse("pong\n")


@router.get("/health")
async def health(request: Request) -> dict[str, str]:
    log_with_correlation_id(get_request_context(request), "Processing health check request")
    return {"status": "healthy"}


@router.get("/ping", response_class=PlainTextResponse)
async def ping(request: Request) -> PlainTextResponse:
    ctx = get_request_context(request)
    correlation_id = get_correlation_id(ctx)
    log_with_correlation_id(ctx, "Processing ping request with context id=%s", correlation_id)
    return PlainTextResponse(f"pong (id={correlation_id})\n")
