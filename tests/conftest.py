from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from app.config import get_settings
from app.main import create_app
from app.observability.metrics import MetricsRegistry, reset_metrics


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("PORT", "HOST", "LOG_LEVEL", "LOG_JSON", "SERVICE_VERSION"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    reset_metrics()

    yield

    reset_metrics()
    get_settings.cache_clear()


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry(runtime_collectors=False)


@pytest.fixture
def app(metrics: MetricsRegistry) -> FastAPI:
    return create_app(metrics=metrics)


@pytest.fixture
async def api_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def read_sample(metrics: MetricsRegistry):
    def _read(name: str, labels: dict[str, str] | None = None) -> float:
        value = metrics.registry.get_sample_value(name, labels or {})
        assert value is not None, f"no sample named {name}"
        return value

    return _read
