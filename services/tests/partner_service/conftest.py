from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import FastAPI
from prometheus_client import REGISTRY
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import ServiceSettings, create_engine, create_schema, get_session_factory
from services.partner_service.app.models import Base
from services.partner_service.app.processors import InMemoryPaymentProcessor, ProcessorRegistry

DAILY_PRICES = [Decimal(value) for value in ("10", "9", "8", "7", "6", "5", "4", "3", "2", "1")]

AD_DRAFT = {
    "serverName": "Emerald Isles",
    "address": "play.emerald.example",
    "version": "1.20.4",
    "description": "Survival server with custom islands and weekly events.",
    "website": "https://emerald.example",
    "discord": "https://discord.gg/emerald",
    "banner": "",
}


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


def draft(**overrides: str) -> dict[str, str]:
    payload = dict(AD_DRAFT)
    payload.update(overrides)
    return payload


def user_headers(user_id: str = "user-1", username: str | None = "alice", role: str | None = None) -> dict[str, str]:
    headers = {"X-User-Id": user_id}
    if username:
        headers["X-User-Name"] = username
    if role:
        headers["X-User-Role"] = role
    return headers


ADMIN = user_headers("admin-1", "moderator", "ADMIN")
OWNER = user_headers("owner-1", "owner", "OWNER")


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield


async def prepare_database(database_url: str) -> async_sessionmaker[AsyncSession]:
    await create_schema(create_engine(database_url), Base.metadata)
    return get_session_factory(database_url)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'partner.db'}"


@pytest.fixture
def settings(database_url: str) -> ServiceSettings:
    return ServiceSettings(
        app_name="Partner Service Test",
        enable_metrics=False,
        enable_tracing=False,
        database_url=database_url,
        partner_default_daily_prices=DAILY_PRICES,
        partner_max_days=30,
        partner_pending_grace_minutes=30,
    )


@pytest.fixture
def processors() -> ProcessorRegistry:
    return ProcessorRegistry(
        [InMemoryPaymentProcessor(name="stripe"), InMemoryPaymentProcessor(name="paypal")]
    )
