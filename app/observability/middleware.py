from __future__ import annotations

from time import perf_counter
from typing import Any, Callable

import structlog
from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request

from app.observability.correlation import (
    RESPONSE_CORRELATION_ID_HEADER,
    RequestContext,
    correlation_id_from_headers,
    get_correlation_id,
    with_correlation_id,
)
from app.observability.metrics import MetricsRegistry, get_metrics


class ResponseRecorder:
    """Wraps an ASGI ``send`` callable, forwarding every message unchanged.

    Records the first status code and the cumulative body size, and stamps
    the correlation ID header onto the response start message.
    """

    def __init__(self, send: Callable[..., Any], correlation_id: str) -> None:
        self._send = send
        self._correlation_id = correlation_id
        self.status_code: int | None = None
        self.written = 0

    async def __call__(self, message: dict[str, Any]) -> None:
        message_type = message.get("type")
        if message_type == "http.response.start":
            if self.status_code is None:
                self.status_code = int(message.get("status", 200))
            message.setdefault("headers", [])
            headers = MutableHeaders(scope=message)
            headers[RESPONSE_CORRELATION_ID_HEADER] = self._correlation_id
        elif message_type == "http.response.body":
            self.written += len(message.get("body", b""))

        await self._send(message)


def _request_size(headers: Headers) -> int:
    try:
        return int(headers.get("content-length", ""))
    except ValueError:
        return -1


def _remote_addr(scope: dict[str, Any]) -> str:
    client = scope.get("client")
    if not client:
        return ""
    host, port = client
    return f"{host}:{port}"


class RequestInstrumentationMiddleware:
    """Correlation IDs, start/end request logs and HTTP metrics for every request."""

    def __init__(self, app: Callable[..., Any], metrics: MetricsRegistry | None = None) -> None:
        self.app = app
        self.metrics = metrics if metrics is not None else get_metrics()

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        headers = request.headers
        method = request.method
        path = request.url.path

        correlation_id = correlation_id_from_headers(headers)
        request.state.context = with_correlation_id(RequestContext(), correlation_id)
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        metrics = self.metrics
        log = structlog.get_logger("access")
        start = perf_counter()
        done = metrics.record_request()
        recorder = ResponseRecorder(send, correlation_id)

        try:
            # Chunked or unknown-length bodies are not observed.
            request_size = _request_size(headers)
            if request_size > 0:
                metrics.observe_request_size(request_size)

            log.info(
                "request_started",
                method=method,
                path=path,
                remote_addr=_remote_addr(scope),
                user_agent=headers.get("user-agent", ""),
                correlation_id=correlation_id,
            )

            try:
                await self.app(scope, receive, recorder)
            except Exception:
                duration = perf_counter() - start
                metrics.observe_duration(metrics.request_duration, duration)
                metrics.observe_response_size(recorder.written)
                metrics.inc_error(metrics.http_error_counter)
                log.exception(
                    "request_failed",
                    method=method,
                    path=path,
                    status=recorder.status_code or 500,
                    duration_s=round(duration, 3),
                    response_size=recorder.written,
                    correlation_id=correlation_id,
                )
                raise

            duration = perf_counter() - start
            status = recorder.status_code if recorder.status_code is not None else 500
            metrics.observe_duration(metrics.request_duration, duration)
            metrics.observe_response_size(recorder.written)

            log.info(
                "request_completed",
                method=method,
                path=path,
                status=status,
                duration_s=round(duration, 3),
                response_size=recorder.written,
                correlation_id=correlation_id,
            )

            if status >= 500:
                metrics.inc_error(metrics.http_error_counter)
        finally:
            done()
            structlog.contextvars.unbind_contextvars("correlation_id")


def log_with_correlation_id(ctx: RequestContext | None, message: str, *args: Any) -> None:
    """Log ``message % args`` with the context's correlation ID attached when it has one."""

    log = structlog.get_logger("app")
    correlation_id = get_correlation_id(ctx)
    if correlation_id:
        log = log.bind(correlation_id=correlation_id)
    log.info(message % args if args else message)
