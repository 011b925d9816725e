from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from services.common import ServiceSettings, dispose_engines
from services.partner_service.app.main import SERVICE_NAME, create_app


@pytest.mark.asyncio
@pytest.mark.parametrize("enable_metrics", [False, True])
async def test_health_endpoint_returns_ok(tmp_path, enable_metrics: bool) -> None:
    settings = ServiceSettings(
        enable_metrics=enable_metrics,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'health.db'}",
    )
    app = create_app(settings)
    assert app.title == SERVICE_NAME

    async with lifespan(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")
            metrics = await client.get("/metrics")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert metrics.status_code == (200 if enable_metrics else 404)
    if enable_metrics:
        assert "partner_checkout_total" in metrics.text
    await dispose_engines()


@pytest.mark.asyncio
async def test_local_app_falls_back_to_in_memory_payments(tmp_path) -> None:
    settings = ServiceSettings(
        environment="local",
        enable_metrics=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'local.db'}",
    )
    app = create_app(settings)

    async with lifespan(app):
        assert app.state.processors.names() == ["local"]
        assert app.state.event_publisher is not None

    assert app.state.processors is None
    await dispose_engines()


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield
