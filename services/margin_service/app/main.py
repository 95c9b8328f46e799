from contextlib import asynccontextmanager

from fastapi import FastAPI

from services.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    close_redis_connections,
    configure_logging,
    create_tables,
    dispose_engines,
    flush_tracing,
    get_session_factory,
    resolve_database_url,
    resolve_redis,
)
from services.common.kafka import KafkaConsumerStub, KafkaProducerStub

from .api.health import router as health_router
from .api.margins import router as margins_router
from .event_handlers import BOOKING_CONFIRMED_TOPIC, BookingEventHandler
from .events import MarginEventPublisher
from .models import Base
from .rule_cache import ActiveRuleCache

SERVICE_NAME = "Margin Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./margin_service.db"


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the Margin Service FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)

    redis_client = resolve_redis(resolved_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        kafka_producer: KafkaProducerStub | None = None
        booking_consumer: KafkaConsumerStub | None = None
        app.state.session_factory = session_factory
        try:
            if resolved_settings.create_tables_on_startup:
                await create_tables(database_url, Base.metadata)
            rule_cache = ActiveRuleCache(
                ttl_seconds=resolved_settings.margin_rule_cache_ttl_seconds,
                redis=redis_client,
            )
            app.state.rule_cache = rule_cache
            kafka_producer = KafkaProducerStub(bootstrap_servers=resolved_settings.kafka_bootstrap_servers)
            await kafka_producer.connect()
            event_publisher = MarginEventPublisher(kafka_producer)
            app.state.event_publisher = event_publisher
            booking_handler = BookingEventHandler(
                session_factory,
                resolved_settings,
                rule_cache,
                event_publisher,
            )
            booking_consumer = KafkaConsumerStub([BOOKING_CONFIRMED_TOPIC], booking_handler.handle)
            await booking_consumer.start()
            app.state.booking_consumer = booking_consumer
            app.state.booking_handler = booking_handler
            yield
        finally:
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.rule_cache = None
            app.state.event_publisher = None
            app.state.booking_consumer = None
            app.state.booking_handler = None
            if booking_consumer is not None:
                await booking_consumer.stop()
            if kafka_producer is not None:
                await kafka_producer.close()
            await dispose_engines()
            if resolved_settings.enable_tracing:
                flush_tracing()
            if redis_client is not None:
                await close_redis_connections()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(margins_router)
    return app


app = create_app()
