"""Per-request correlation identifiers.

The middleware resolves one ID per request (client supplied or generated),
stores it in an immutable :class:`RequestContext` on the request and echoes
it back in the ``X-Correlation-ID`` response header.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from starlette.datastructures import Headers

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"
RESPONSE_CORRELATION_ID_HEADER = "X-Correlation-ID"


@dataclass(frozen=True)
class RequestContext:
    correlation_id: str | None = None


_EMPTY_CONTEXT = RequestContext()


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_or_create_correlation_id(ctx: RequestContext | None) -> str:
    """Return the ID carried by ``ctx``, or a new one when it is unset or empty."""

    correlation_id = get_correlation_id(ctx)
    if correlation_id:
        return correlation_id
    return generate_correlation_id()


def with_correlation_id(ctx: RequestContext | None, correlation_id: str) -> RequestContext:
    return replace(ctx or _EMPTY_CONTEXT, correlation_id=correlation_id)


def get_correlation_id(ctx: RequestContext | None) -> str:
    if ctx is None or ctx.correlation_id is None:
        return ""
    return ctx.correlation_id


def correlation_id_from_headers(headers: Mapping[str, str]) -> str:
    """Pick the request's correlation ID: X-Request-ID, then X-Correlation-ID, then a new one."""

    if not isinstance(headers, Headers):
        headers = Headers(headers=dict(headers))
    return (
        headers.get(REQUEST_ID_HEADER)
        or headers.get(CORRELATION_ID_HEADER)
        or generate_correlation_id()
    )


def get_request_context(request: Any) -> RequestContext:
    """Typed accessor for the context stored on ``request.state`` by the middleware."""

    ctx = getattr(request.state, "context", None)
    if isinstance(ctx, RequestContext):
        return ctx
    return _EMPTY_CONTEXT
