import asyncio

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from httpx import ASGITransport, AsyncClient
from structlog.testing import capture_logs

from app.observability.correlation import RequestContext, with_correlation_id
from app.observability.middleware import RequestInstrumentationMiddleware, log_with_correlation_id


def _inner_app() -> FastAPI:
    inner = FastAPI()

    @inner.get("/ok")
    async def ok() -> PlainTextResponse:
        return PlainTextResponse("fine")

    @inner.get("/fail")
    async def fail() -> PlainTextResponse:
        return PlainTextResponse("broken", status_code=500)

    @inner.get("/missing")
    async def missing() -> PlainTextResponse:
        return PlainTextResponse("nope", status_code=404)

    @inner.get("/boom")
    async def boom() -> PlainTextResponse:
        raise RuntimeError("handler exploded")

    @inner.post("/upload")
    async def upload(request: Request) -> Response:
        body = await request.body()
        return PlainTextResponse(str(len(body)))

    @inner.get("/context")
    async def context(request: Request) -> dict[str, str]:
        return {"correlation_id": request.state.context.correlation_id}

    return inner


@pytest.fixture
async def client(metrics):
    wrapped = RequestInstrumentationMiddleware(_inner_app(), metrics=metrics)
    async with AsyncClient(transport=ASGITransport(app=wrapped), base_url="http://test") as c:
        yield c


async def test_generated_correlation_id_is_echoed_and_unique(client) -> None:
    first = await client.get("/ok")
    second = await client.get("/ok")

    assert first.headers["x-correlation-id"]
    assert second.headers["x-correlation-id"]
    assert first.headers["x-correlation-id"] != second.headers["x-correlation-id"]


async def test_request_id_header_wins_over_correlation_id(client) -> None:
    resp = await client.get("/ok", headers={"X-Request-ID": "V1", "X-Correlation-ID": "V2"})
    assert resp.headers["x-correlation-id"] == "V1"


async def test_correlation_id_header_used_as_fallback(client) -> None:
    resp = await client.get("/ok", headers={"X-Correlation-ID": "V2"})
    assert resp.headers["x-correlation-id"] == "V2"


async def test_handler_sees_correlation_id_in_request_context(client) -> None:
    resp = await client.get("/context", headers={"X-Request-ID": "abc-123"})
    assert resp.json() == {"correlation_id": "abc-123"}


async def test_correlation_id_present_on_error_responses(client) -> None:
    resp = await client.get("/fail", headers={"X-Request-ID": "err-1"})
    assert resp.status_code == 500
    assert resp.headers["x-correlation-id"] == "err-1"


async def test_500_increments_error_counter_once(client, read_sample) -> None:
    await client.get("/fail")
    assert read_sample("http_errors_total") == 1


async def test_200_and_404_leave_error_counter_unchanged(client, read_sample) -> None:
    await client.get("/ok")
    await client.get("/missing")
    assert read_sample("http_errors_total") == 0


async def test_request_counts_duration_and_response_size(client, read_sample) -> None:
    resp = await client.get("/ok")

    assert resp.text == "fine"
    assert read_sample("http_requests_total") == 1
    assert read_sample("http_requests_active") == 0
    assert read_sample("http_request_duration_seconds_count") == 1
    assert read_sample("http_response_size_bytes_count") == 1
    assert read_sample("http_response_size_bytes_sum") == len(b"fine")


async def test_request_size_observed_for_known_content_length(client, read_sample) -> None:
    resp = await client.post("/upload", content=b"x" * 512)

    assert resp.text == "512"
    assert read_sample("http_request_size_bytes_count") == 1
    assert read_sample("http_request_size_bytes_sum") == 512


async def test_request_size_skipped_for_empty_and_streamed_bodies(client, read_sample) -> None:
    async def chunks():
        yield b"abc"
        yield b"def"

    await client.get("/ok")
    resp = await client.post("/upload", content=chunks())

    assert resp.text == "6"
    assert read_sample("http_request_size_bytes_count") == 0


async def test_handler_exception_propagates_and_is_recorded(metrics, read_sample) -> None:
    wrapped = RequestInstrumentationMiddleware(_inner_app(), metrics=metrics)
    async with AsyncClient(transport=ASGITransport(app=wrapped), base_url="http://test") as c:
        with pytest.raises(RuntimeError, match="handler exploded"):
            await c.get("/boom")

    assert read_sample("http_requests_total") == 1
    assert read_sample("http_requests_active") == 0
    assert read_sample("http_errors_total") == 1
    assert read_sample("http_request_duration_seconds_count") == 1


async def test_concurrent_requests_each_get_their_own_id(client, read_sample) -> None:
    responses = await asyncio.gather(*(client.get("/ok") for _ in range(10)))

    ids = [resp.headers["x-correlation-id"] for resp in responses]
    assert all(resp.status_code == 200 for resp in responses)
    assert all(ids)
    assert len(set(ids)) == 10
    assert read_sample("http_requests_total") == 10
    assert read_sample("http_requests_active") == 0


async def test_start_and_end_log_lines(client) -> None:
    with capture_logs() as logs:
        await client.get("/ok", headers={"X-Request-ID": "log-1", "User-Agent": "tester/1.0"})

    started = next(entry for entry in logs if entry["event"] == "request_started")
    completed = next(entry for entry in logs if entry["event"] == "request_completed")

    assert started["method"] == "GET"
    assert started["path"] == "/ok"
    assert started["user_agent"] == "tester/1.0"
    assert started["correlation_id"] == "log-1"
    assert "remote_addr" in started
    assert completed["status"] == 200
    assert completed["response_size"] == len(b"fine")
    assert completed["duration_s"] >= 0
    assert completed["correlation_id"] == "log-1"


async def test_non_http_scopes_pass_through(metrics, read_sample) -> None:
    seen: list[str] = []

    async def inner(scope, receive, send) -> None:
        seen.append(scope["type"])

    wrapped = RequestInstrumentationMiddleware(inner, metrics=metrics)
    await wrapped({"type": "lifespan"}, None, None)

    assert seen == ["lifespan"]
    assert read_sample("http_requests_total") == 0


def test_log_with_correlation_id_binds_id_when_present() -> None:
    with capture_logs() as logs:
        log_with_correlation_id(with_correlation_id(RequestContext(), "cid-9"), "Processing %s request", "pong")
        log_with_correlation_id(RequestContext(), "Processing health check request")

    assert logs[0]["event"] == "Processing pong request"
    assert logs[0]["correlation_id"] == "cid-9"
    assert logs[1]["event"] == "Processing health check request"
    assert "correlation_id" not in logs[1]
