from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from services.margin_service.app.domain import Range, RuleConditions, RuleDefinition
from services.margin_service.app.errors import RuleValidationError
from services.margin_service.app.locations import CountryEntry, Resolution, _resolve, country_display_name
from services.margin_service.app.validation import validate_rule_definition


class _StaticCatalog:
    def __init__(self, countries: dict[str, str], cities: list[str]) -> None:
        self._countries = [CountryEntry(code=code, name=name) for code, name in countries.items()]
        self._cities = cities

    async def resolve_countries(self, search: str | None = None) -> list[CountryEntry]:  # noqa: ARG002
        return list(self._countries)

    async def resolve_cities(self, countries=None) -> list[str]:  # noqa: ARG002
        return list(self._cities)

    async def canonical_countries(self, values) -> Resolution:
        names = [country_display_name(value) for value in values]
        return _resolve(names, (entry.name for entry in self._countries))

    async def canonical_cities(self, values) -> Resolution:
        return _resolve(values, self._cities)


_CATALOG = _StaticCatalog({"SA": "Saudi Arabia", "AE": "United Arab Emirates"}, ["Dubai", "Jeddah", "Riyadh"])


def _definition(**overrides) -> RuleDefinition:
    values = {
        "name": "Gulf summer",
        "calculation_type": "percentage",
        "percent_value": Decimal("12.5"),
        "fixed_amount": Decimal("0"),
        "currency": "SAR",
        "priority": 10,
    }
    values.update(overrides)
    return RuleDefinition(**values)


@pytest.mark.asyncio
async def test_valid_definition_is_canonicalised() -> None:
    definition = _definition(
        name="  Gulf summer  ",
        currency="sar",
        conditions=RuleConditions(countries=frozenset({"sa"}), cities=frozenset({"riyadh"})),
    )

    validated = await validate_rule_definition(definition, _CATALOG)

    assert validated.name == "Gulf summer"
    assert validated.currency == "SAR"
    assert validated.conditions.countries == frozenset({"Saudi Arabia"})
    assert validated.conditions.cities == frozenset({"Riyadh"})


@pytest.mark.asyncio
async def test_all_problems_are_reported_together() -> None:
    definition = _definition(
        percent_value=Decimal("150"),
        priority=101,
        conditions=RuleConditions(
            star_rating=Range(5, 3),
            booking_value=Range(Decimal("-1"), None),
            date_range=Range(date(2025, 12, 31), date(2025, 1, 1)),
        ),
    )

    with pytest.raises(RuleValidationError) as excinfo:
        await validate_rule_definition(definition, _CATALOG)

    errors = excinfo.value.errors
    assert "percentValue must be between 0 and 100" in errors
    assert "priority must be between 0 and 100" in errors
    assert "starRating minimum must not exceed its maximum" in errors
    assert "bookingValue bounds cannot be negative" in errors
    assert "dateRange minimum must not exceed its maximum" in errors


@pytest.mark.asyncio
async def test_fixed_rule_requires_positive_amount() -> None:
    with pytest.raises(RuleValidationError) as excinfo:
        await validate_rule_definition(_definition(calculation_type="fixed"), _CATALOG)

    assert excinfo.value.errors == ["fixedAmount must be greater than zero for fixed rules"]


@pytest.mark.asyncio
async def test_unknown_locations_are_rejected() -> None:
    definition = _definition(
        conditions=RuleConditions(countries=frozenset({"Atlantis"}), cities=frozenset({"Riyadh", "Gotham"}))
    )

    with pytest.raises(RuleValidationError) as excinfo:
        await validate_rule_definition(definition, _CATALOG)

    assert excinfo.value.errors == ["unknown countries: Atlantis", "unknown cities: Gotham"]


@pytest.mark.asyncio
async def test_blank_name_and_bad_currency() -> None:
    definition = replace(_definition(), name="   ", currency="RIYAL")

    with pytest.raises(RuleValidationError) as excinfo:
        await validate_rule_definition(definition, _CATALOG)

    assert excinfo.value.errors == ["name must be non-empty", "currency must be a three-letter code"]
