"""Write-time validation of margin rule definitions."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

from .domain import CALCULATION_TYPES, CUSTOMER_TYPES, MEAL_TYPES, RULE_STATUSES, Range, RuleDefinition
from .errors import RuleValidationError
from .locations import LocationCatalogProtocol

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_PRIORITY = 100
_TWO_PLACES = Decimal("0.01")


def _check_range(label: str, bounds: Range, errors: list[str]) -> None:
    if bounds.lower is not None and bounds.upper is not None and bounds.lower > bounds.upper:
        errors.append(f"{label} minimum must not exceed its maximum")


def _check_amount(label: str, value: Decimal, errors: list[str]) -> None:
    if not value.is_finite():
        errors.append(f"{label} must be a finite number")
    elif value != value.quantize(_TWO_PLACES):
        errors.append(f"{label} must have at most two decimal places")


def _static_errors(definition: RuleDefinition) -> list[str]:
    errors: list[str] = []
    name = definition.name.strip()
    if not name:
        errors.append("name must be non-empty")
    elif len(name) > MAX_NAME_LENGTH:
        errors.append(f"name cannot exceed {MAX_NAME_LENGTH} characters")
    if definition.description and len(definition.description) > MAX_DESCRIPTION_LENGTH:
        errors.append(f"description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")

    if definition.calculation_type not in CALCULATION_TYPES:
        errors.append(f"calculationType must be one of {', '.join(CALCULATION_TYPES)}")
    if definition.status not in RULE_STATUSES:
        errors.append(f"status must be one of {', '.join(RULE_STATUSES)}")

    _check_amount("percentValue", definition.percent_value, errors)
    if definition.percent_value.is_finite() and not Decimal("0") <= definition.percent_value <= Decimal("100"):
        errors.append("percentValue must be between 0 and 100")
    _check_amount("fixedAmount", definition.fixed_amount, errors)
    if definition.fixed_amount.is_finite() and definition.fixed_amount < 0:
        errors.append("fixedAmount cannot be negative")
    if definition.calculation_type == "fixed" and definition.fixed_amount == 0:
        errors.append("fixedAmount must be greater than zero for fixed rules")

    currency = definition.currency.strip()
    if len(currency) != 3 or not currency.isalpha():
        errors.append("currency must be a three-letter code")
    if not 0 <= definition.priority <= MAX_PRIORITY:
        errors.append(f"priority must be between 0 and {MAX_PRIORITY}")

    conditions = definition.conditions
    for bound in (conditions.star_rating.lower, conditions.star_rating.upper):
        if bound is not None and not 1 <= bound <= 5:
            errors.append("starRating bounds must be between 1 and 5")
            break
    _check_range("starRating", conditions.star_rating, errors)
    for bound in (conditions.booking_value.lower, conditions.booking_value.upper):
        if bound is not None and bound < 0:
            errors.append("bookingValue bounds cannot be negative")
            break
    _check_range("bookingValue", conditions.booking_value, errors)
    _check_range("dateRange", conditions.date_range, errors)

    unknown_meals = sorted(set(conditions.meal_types) - set(MEAL_TYPES))
    if unknown_meals:
        errors.append(f"unknown meal types: {', '.join(unknown_meals)}")
    if conditions.customer_type not in CUSTOMER_TYPES:
        errors.append(f"customerType must be one of {', '.join(CUSTOMER_TYPES)}")
    return errors


async def validate_rule_definition(
    definition: RuleDefinition,
    catalog: LocationCatalogProtocol,
) -> RuleDefinition:
    """Return the definition with canonical names, or raise RuleValidationError.

    Every problem is collected so the caller can report them together.
    """

    errors = _static_errors(definition)
    conditions = definition.conditions
    countries = await catalog.canonical_countries(sorted(conditions.countries))
    if countries.unknown:
        errors.append(f"unknown countries: {', '.join(countries.unknown)}")
    cities = await catalog.canonical_cities(sorted(conditions.cities))
    if cities.unknown:
        errors.append(f"unknown cities: {', '.join(cities.unknown)}")
    if errors:
        raise RuleValidationError(errors)

    return replace(
        definition,
        name=definition.name.strip(),
        description=(definition.description or "").strip() or None,
        currency=definition.currency.strip().upper(),
        conditions=replace(
            conditions,
            countries=frozenset(countries.resolved),
            cities=frozenset(cities.resolved),
        ),
    )
