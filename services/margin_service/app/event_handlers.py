"""Background event handlers for margin service integrations."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.common import ServiceSettings, lifespan_session

from .errors import CurrencyMismatchError, DuplicateBookingError, InvalidContextError
from .events import MarginEventPublisher
from .repository import MarginRuleRepository
from .rule_cache import RuleCacheProtocol
from .services import MarginEvaluator

_LOGGER = logging.getLogger(__name__)

BOOKING_CONFIRMED_TOPIC = "booking.confirmed.v1"


def _normalize_reference(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    return str(value)


class BookingEventHandler:
    """Records the applied margin when the booking pipeline confirms a booking."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: ServiceSettings,
        rule_cache: RuleCacheProtocol | None,
        event_publisher: MarginEventPublisher | None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._rule_cache = rule_cache
        self.event_publisher = event_publisher

    async def handle(self, topic: str, payload: dict[str, Any]) -> None:
        if topic != BOOKING_CONFIRMED_TOPIC:
            return
        await self._handle_booking_confirmed(payload)

    async def _handle_booking_confirmed(self, payload: dict[str, Any]) -> None:
        booking_id = _normalize_reference(payload.get("bookingId") or payload.get("booking_id"))
        context_data = payload.get("context")
        if booking_id is None or not isinstance(context_data, dict):
            _LOGGER.warning("Ignoring %s event without bookingId or context", BOOKING_CONFIRMED_TOPIC)
            return

        async with lifespan_session(self._session_factory) as session:
            evaluator = MarginEvaluator(
                MarginRuleRepository(session),
                rule_cache=self._rule_cache,
                default_percent=self._settings.default_margin_percent,
                pricing_currency=self._settings.pricing_currency.upper(),
                event_publisher=self.event_publisher,
            )
            try:
                context = evaluator.build_context(context_data)
                await evaluator.evaluate_and_record(context, booking_id=booking_id)
            except (InvalidContextError, CurrencyMismatchError) as exc:
                # Redelivery cannot fix the payload; drop it.
                _LOGGER.warning("Dropping booking %s: %s", booking_id, exc)
            except DuplicateBookingError:
                # Redelivered event; the margin is already counted.
                await session.rollback()
                _LOGGER.info("Booking %s margin already recorded; skipping redelivery", booking_id)
