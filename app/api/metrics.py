from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from app.observability.correlation import get_request_context
from app.observability.metrics import MetricsRegistry
from app.observability.middleware import log_with_correlation_id


router = APIRouter(tags=["metrics"])


def get_metrics_registry(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


@router.get("/metrics")
def metrics(request: Request, registry: MetricsRegistry = Depends(get_metrics_registry)) -> Response:
    log_with_correlation_id(get_request_context(request), "Processing metrics request")
    return Response(content=registry.generate_latest(), media_type=registry.content_type)
