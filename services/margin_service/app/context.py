"""Construction and validation of booking contexts for evaluation."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .domain import CUSTOMER_TYPES, MEAL_TYPES, BookingContext
from .errors import InvalidContextError
from .locations import country_display_name


def _parse_decimal(name: str, value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidContextError(f"{name} must be a number")
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise InvalidContextError(f"{name} must be a number") from exc
    if not parsed.is_finite():
        raise InvalidContextError(f"{name} must be a finite number")
    return parsed


def _parse_int(name: str, value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidContextError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise InvalidContextError(f"{name} must be an integer") from exc
    if not parsed.is_finite() or parsed != parsed.to_integral_value():
        raise InvalidContextError(f"{name} must be an integer")
    return int(parsed)


def _parse_date(name: str, value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError as exc:
            raise InvalidContextError(f"{name} must be an ISO date") from exc
    raise InvalidContextError(f"{name} must be an ISO date")


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = " ".join(str(value).split())
    return cleaned or None


def parse_booking_context(data: Mapping[str, Any], *, default_currency: str) -> BookingContext:
    """Build a BookingContext from a camelCase mapping, rejecting malformed input.

    ``bookingValue`` falls back to ``basePrice * nights * rooms``; ``nights`` is
    derived from the stay dates when both are present.
    """

    base_price = _parse_decimal("basePrice", data.get("basePrice"))
    if base_price is None:
        raise InvalidContextError("basePrice is required")
    if base_price <= 0:
        raise InvalidContextError("basePrice must be greater than zero")
    if base_price != base_price.quantize(Decimal("0.01")):
        raise InvalidContextError("basePrice must have at most two decimal places")

    currency = _clean_text(data.get("currency")) or default_currency
    if len(currency) != 3 or not currency.isalpha():
        raise InvalidContextError("currency must be a three-letter code")

    star_rating = _parse_int("starRating", data.get("starRating"))
    if star_rating is not None and not 1 <= star_rating <= 5:
        raise InvalidContextError("starRating must be between 1 and 5")

    check_in = _parse_date("checkInDate", data.get("checkInDate"))
    check_out = _parse_date("checkOutDate", data.get("checkOutDate"))
    if check_out is not None and check_in is None:
        raise InvalidContextError("checkOutDate requires checkInDate")

    nights = _parse_int("nights", data.get("nights"))
    if check_in is not None and check_out is not None:
        stay_nights = (check_out - check_in).days
        if stay_nights <= 0:
            raise InvalidContextError("checkOutDate must be after checkInDate")
        if nights is not None and nights != stay_nights:
            raise InvalidContextError("nights does not match the stay dates")
        nights = stay_nights
    if nights is None:
        nights = 1
    if nights < 1:
        raise InvalidContextError("nights must be at least 1")

    rooms = _parse_int("rooms", data.get("rooms"))
    if rooms is None:
        rooms = 1
    if rooms < 1:
        raise InvalidContextError("rooms must be at least 1")

    booking_value = _parse_decimal("bookingValue", data.get("bookingValue"))
    if booking_value is None:
        booking_value = base_price * nights * rooms
    elif booking_value < 0:
        raise InvalidContextError("bookingValue cannot be negative")

    meal_type = _clean_text(data.get("mealType"))
    if meal_type is not None:
        meal_type = meal_type.lower()
        if meal_type not in MEAL_TYPES:
            raise InvalidContextError(f"mealType must be one of {', '.join(MEAL_TYPES)}")

    customer_type = (_clean_text(data.get("customerType")) or "b2c").lower()
    if customer_type not in CUSTOMER_TYPES or customer_type == "all":
        raise InvalidContextError("customerType must be b2c or b2b")

    country = _clean_text(data.get("country"))
    return BookingContext(
        base_price=base_price,
        currency=currency.upper(),
        booking_value=booking_value,
        country=country_display_name(country) if country else None,
        city=_clean_text(data.get("city")),
        star_rating=star_rating,
        check_in_date=check_in,
        meal_type=meal_type,
        customer_type=customer_type,
    )
