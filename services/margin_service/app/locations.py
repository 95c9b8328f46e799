"""Location catalog backing condition authoring and rule validation."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import HotelLocation

COUNTRY_NAMES: dict[str, str] = {
    "SA": "Saudi Arabia",
    "AE": "United Arab Emirates",
    "EG": "Egypt",
    "JO": "Jordan",
    "BH": "Bahrain",
    "KW": "Kuwait",
    "OM": "Oman",
    "QA": "Qatar",
    "TR": "Turkey",
    "GB": "United Kingdom",
    "US": "United States",
    "FR": "France",
    "DE": "Germany",
    "IT": "Italy",
    "ES": "Spain",
    "TH": "Thailand",
    "MY": "Malaysia",
    "ID": "Indonesia",
    "SG": "Singapore",
    "IN": "India",
    "PK": "Pakistan",
    "BD": "Bangladesh",
    "LK": "Sri Lanka",
    "MV": "Maldives",
    "MA": "Morocco",
    "TN": "Tunisia",
    "LB": "Lebanon",
    "IQ": "Iraq",
    "SY": "Syria",
    "YE": "Yemen",
    "PS": "Palestine",
    "SD": "Sudan",
    "LY": "Libya",
    "DZ": "Algeria",
}
_COUNTRY_CODES: dict[str, str] = {name.casefold(): code for code, name in COUNTRY_NAMES.items()}


def normalize_name(value: str | None) -> str | None:
    """Case- and whitespace-insensitive key for location names."""

    if value is None:
        return None
    collapsed = " ".join(value.split())
    return collapsed.casefold() or None


def country_display_name(value: str) -> str:
    """Map an ISO alpha-2 code to its display name; names pass through."""

    cleaned = " ".join(value.split())
    return COUNTRY_NAMES.get(cleaned.upper(), cleaned) if len(cleaned) == 2 else cleaned


@dataclass(frozen=True, slots=True)
class CountryEntry:
    code: str
    name: str


@dataclass(frozen=True, slots=True)
class Resolution:
    resolved: list[str]
    unknown: list[str]


class LocationCatalogProtocol(Protocol):
    async def resolve_countries(self, search: str | None = None) -> list[CountryEntry]: ...

    async def resolve_cities(self, countries: Sequence[str] | None = None) -> list[str]: ...

    async def canonical_countries(self, values: Iterable[str]) -> Resolution: ...

    async def canonical_cities(self, values: Iterable[str]) -> Resolution: ...


def _resolve(values: Iterable[str], known: Iterable[str]) -> Resolution:
    lookup = {normalize_name(name): name for name in known}
    resolved: list[str] = []
    unknown: list[str] = []
    for value in values:
        canonical = lookup.get(normalize_name(value))
        if canonical is None:
            unknown.append(value)
        elif canonical not in resolved:
            resolved.append(canonical)
    return Resolution(resolved=resolved, unknown=unknown)


class HotelLocationCatalog:
    """Countries and cities derived from the hotel locations table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add_location(self, *, country_code: str, city: str) -> HotelLocation:
        code = country_code.strip().upper()
        cleaned_city = " ".join(city.split())
        existing = await self.session.execute(
            select(HotelLocation).where(
                HotelLocation.country_code == code,
                HotelLocation.city == cleaned_city,
            )
        )
        location = existing.scalar_one_or_none()
        if location is not None:
            return location
        location = HotelLocation(country_code=code, city=cleaned_city)
        self.session.add(location)
        await self.session.flush()
        return location

    async def _country_codes(self) -> list[str]:
        result = await self.session.execute(select(HotelLocation.country_code).distinct())
        return [code for code in result.scalars() if code]

    async def resolve_countries(self, search: str | None = None) -> list[CountryEntry]:
        entries = [
            CountryEntry(code=code, name=COUNTRY_NAMES.get(code, code))
            for code in await self._country_codes()
        ]
        needle = normalize_name(search)
        if needle:
            entries = [
                entry
                for entry in entries
                if needle in normalize_name(entry.name) or needle == entry.code.casefold()
            ]
        return sorted(entries, key=lambda entry: entry.name)

    async def resolve_cities(self, countries: Sequence[str] | None = None) -> list[str]:
        stmt = select(HotelLocation.city).distinct()
        if countries:
            codes = {
                _COUNTRY_CODES.get(normalize_name(country_display_name(name)) or "", name.strip().upper())
                for name in countries
            }
            stmt = stmt.where(HotelLocation.country_code.in_(sorted(codes)))
        result = await self.session.execute(stmt)
        return sorted(city for city in result.scalars() if city)

    async def canonical_countries(self, values: Iterable[str]) -> Resolution:
        entries = await self.resolve_countries()
        normalized = [country_display_name(value) for value in values]
        return _resolve(normalized, (entry.name for entry in entries))

    async def canonical_cities(self, values: Iterable[str]) -> Resolution:
        return _resolve(values, await self.resolve_cities())
