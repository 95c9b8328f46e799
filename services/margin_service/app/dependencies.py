"""Dependency wiring for the margin service."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import ServiceSettings, lifespan_session

from .locations import HotelLocationCatalog
from .repository import MarginRuleRepository
from .services import MarginEvaluator, MarginRuleService


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an AsyncSession for the current request lifecycle."""

    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_repository(session: AsyncSession = Depends(get_session)) -> MarginRuleRepository:
    return MarginRuleRepository(session)


def get_location_catalog(session: AsyncSession = Depends(get_session)) -> HotelLocationCatalog:
    return HotelLocationCatalog(session)


def get_service_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


def get_rule_cache(request: Request) -> Any:
    return getattr(request.app.state, "rule_cache", None)


def get_event_publisher(request: Request) -> Any:
    return getattr(request.app.state, "event_publisher", None)


def get_rule_service(
    repository: MarginRuleRepository = Depends(get_repository),
    catalog: HotelLocationCatalog = Depends(get_location_catalog),
    settings: ServiceSettings = Depends(get_service_settings),
    rule_cache: Any = Depends(get_rule_cache),
    event_publisher: Any = Depends(get_event_publisher),
) -> MarginRuleService:
    return MarginRuleService(
        repository,
        catalog,
        rule_cache=rule_cache,
        event_publisher=event_publisher,
        default_currency=settings.pricing_currency.upper(),
    )


def get_evaluator(
    repository: MarginRuleRepository = Depends(get_repository),
    settings: ServiceSettings = Depends(get_service_settings),
    rule_cache: Any = Depends(get_rule_cache),
    event_publisher: Any = Depends(get_event_publisher),
) -> MarginEvaluator:
    return MarginEvaluator(
        repository,
        rule_cache=rule_cache,
        default_percent=settings.default_margin_percent,
        pricing_currency=settings.pricing_currency.upper(),
        event_publisher=event_publisher,
    )
