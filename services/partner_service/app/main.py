from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from services.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    close_redis_connections,
    configure_logging,
    create_engine,
    create_schema,
    dispose_engines,
    get_settings,
    get_session_factory,
    resolve_database_url,
    resolve_redis,
)
from services.common.kafka import KafkaProducerStub

from .api.admin import router as admin_router
from .api.health import router as health_router
from .api.partner import router as partner_router
from .clock import Clock, utcnow
from .errors import register_error_handlers
from .events import PartnerEventPublisher
from .models import Base
from .processors import ProcessorRegistry, build_processors

SERVICE_NAME = "Partner Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./partner_service.db"


def create_app(
    settings: ServiceSettings | None = None,
    *,
    processors: ProcessorRegistry | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Create the Partner Service FastAPI application."""

    resolved_settings = settings or get_settings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)
    redis_client = resolve_redis(resolved_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        kafka_producer: KafkaProducerStub | None = None
        http_client: httpx.AsyncClient | None = None
        registry = processors
        app.state.session_factory = session_factory
        app.state.redis = redis_client
        app.state.clock = clock or utcnow
        try:
            if database_url.startswith("sqlite"):
                await create_schema(create_engine(database_url), Base.metadata)
            if registry is None:
                http_client = httpx.AsyncClient(timeout=resolved_settings.payment_timeout_seconds)
                registry = build_processors(resolved_settings, http_client=http_client)
            app.state.processors = registry
            kafka_producer = KafkaProducerStub(bootstrap_servers=resolved_settings.kafka_bootstrap_servers)
            await kafka_producer.connect()
            app.state.kafka_producer = kafka_producer
            app.state.event_publisher = PartnerEventPublisher(kafka_producer)
            yield
        finally:
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.processors = None
            app.state.event_publisher = None
            app.state.kafka_producer = None
            app.state.redis = None
            if kafka_producer is not None:
                await kafka_producer.close()
            if http_client is not None:
                await http_client.aclose()
            await dispose_engines()
            if redis_client is not None:
                await close_redis_connections()

    app = build_app(resolved_settings, lifespan=lifespan)
    register_error_handlers(app)
    app.include_router(health_router)
    app.include_router(partner_router)
    app.include_router(admin_router)
    return app


app = create_app()
