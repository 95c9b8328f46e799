"""Condition matching between margin rules and booking contexts."""

from __future__ import annotations

from collections.abc import Iterable

from .domain import BookingContext, Range, RuleConditions
from .locations import normalize_name


def _name_matches(allowed: frozenset[str], value: str | None) -> bool:
    if not allowed:
        return True
    key = normalize_name(value)
    if key is None:
        return False
    return any(normalize_name(candidate) == key for candidate in allowed)


def _within(bounds: Range, value: object | None) -> bool:
    if bounds.is_empty:
        return True
    if value is None:
        return False
    return bounds.contains(value)


def _member(allowed: Iterable[str], value: str | None) -> bool:
    if not allowed:
        return True
    return value is not None and value in allowed


def failed_dimensions(conditions: RuleConditions, context: BookingContext) -> list[str]:
    """Condition dimensions the context does not satisfy, in declaration order."""

    checks = (
        ("countries", _name_matches(conditions.countries, context.country)),
        ("cities", _name_matches(conditions.cities, context.city)),
        ("starRating", _within(conditions.star_rating, context.star_rating)),
        ("bookingValue", _within(conditions.booking_value, context.booking_value)),
        ("dateRange", _within(conditions.date_range, context.check_in_date)),
        ("mealTypes", _member(conditions.meal_types, context.meal_type)),
        (
            "customerType",
            conditions.customer_type == "all" or conditions.customer_type == context.customer_type,
        ),
    )
    return [dimension for dimension, satisfied in checks if not satisfied]


def matches(conditions: RuleConditions, context: BookingContext) -> bool:
    """True when every constrained dimension is satisfied by the context."""

    return not failed_dimensions(conditions, context)
