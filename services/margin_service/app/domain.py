"""Immutable value types shared by the margin rule engine.

Rules are handed to the evaluation path as frozen snapshots. A rule edit never
mutates a snapshot in place; the active rule cache swaps the whole tuple, so a
reader sees either the old definition or the new one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal

CalculationType = Literal["percentage", "fixed", "hybrid"]
RuleStatus = Literal["active", "inactive"]
MealType = Literal["room_only", "breakfast", "half_board", "full_board", "all_inclusive"]
CustomerType = Literal["all", "b2c", "b2b"]

CALCULATION_TYPES: tuple[str, ...] = ("percentage", "fixed", "hybrid")
RULE_STATUSES: tuple[str, ...] = ("active", "inactive")
MEAL_TYPES: tuple[str, ...] = ("room_only", "breakfast", "half_board", "full_board", "all_inclusive")
CUSTOMER_TYPES: tuple[str, ...] = ("all", "b2c", "b2b")

CONDITION_DIMENSIONS: tuple[str, ...] = (
    "countries",
    "cities",
    "starRating",
    "bookingValue",
    "dateRange",
    "mealTypes",
    "customerType",
)

CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * _HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(value) / _HUNDRED).quantize(CENT)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class Range:
    """Inclusive bounds; a missing bound leaves that side open."""

    lower: Any = None
    upper: Any = None

    @property
    def is_empty(self) -> bool:
        return self.lower is None and self.upper is None

    def contains(self, value: Any) -> bool:
        if self.lower is not None and value < self.lower:
            return False
        if self.upper is not None and value > self.upper:
            return False
        return True


EMPTY_RANGE = Range()


def _decimal_or_none(value: Any) -> Decimal | None:
    return None if value is None else Decimal(str(value))


def _date_or_none(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass(frozen=True, slots=True)
class RuleConditions:
    countries: frozenset[str] = frozenset()
    cities: frozenset[str] = frozenset()
    star_rating: Range = EMPTY_RANGE
    booking_value: Range = EMPTY_RANGE
    date_range: Range = EMPTY_RANGE
    meal_types: frozenset[str] = frozenset()
    customer_type: str = "all"

    def active_dimensions(self) -> tuple[str, ...]:
        """Names of the dimensions that constrain matching."""

        flags = (
            bool(self.countries),
            bool(self.cities),
            not self.star_rating.is_empty,
            not self.booking_value.is_empty,
            not self.date_range.is_empty,
            bool(self.meal_types),
            self.customer_type != "all",
        )
        return tuple(name for name, flag in zip(CONDITION_DIMENSIONS, flags) if flag)

    @property
    def specificity(self) -> int:
        return len(self.active_dimensions())

    @property
    def is_global(self) -> bool:
        return self.specificity == 0

    def to_document(self) -> dict[str, Any]:
        """JSON-compatible representation used for storage and caching."""

        return {
            "countries": sorted(self.countries),
            "cities": sorted(self.cities),
            "starRating": {"min": self.star_rating.lower, "max": self.star_rating.upper},
            "bookingValue": {
                "min": None if self.booking_value.lower is None else str(self.booking_value.lower),
                "max": None if self.booking_value.upper is None else str(self.booking_value.upper),
            },
            "dateRange": {
                "start": None if self.date_range.lower is None else self.date_range.lower.isoformat(),
                "end": None if self.date_range.upper is None else self.date_range.upper.isoformat(),
            },
            "mealTypes": sorted(self.meal_types),
            "customerType": self.customer_type,
        }

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> "RuleConditions":
        if not document:
            return cls()
        star = document.get("starRating") or {}
        value = document.get("bookingValue") or {}
        window = document.get("dateRange") or {}
        return cls(
            countries=frozenset(document.get("countries") or ()),
            cities=frozenset(document.get("cities") or ()),
            star_rating=Range(star.get("min"), star.get("max")),
            booking_value=Range(_decimal_or_none(value.get("min")), _decimal_or_none(value.get("max"))),
            date_range=Range(_date_or_none(window.get("start")), _date_or_none(window.get("end"))),
            meal_types=frozenset(document.get("mealTypes") or ()),
            customer_type=document.get("customerType") or "all",
        )


@dataclass(frozen=True, slots=True)
class RuleDefinition:
    """Operator-editable part of a margin rule."""

    name: str
    calculation_type: str
    percent_value: Decimal
    fixed_amount: Decimal
    currency: str
    priority: int
    status: str = "active"
    description: str | None = None
    conditions: RuleConditions = field(default_factory=RuleConditions)


@dataclass(frozen=True, slots=True)
class MarginRuleSnapshot:
    id: int
    name: str
    description: str | None
    calculation_type: str
    percent_value: Decimal
    fixed_amount: Decimal
    currency: str
    priority: int
    status: str
    conditions: RuleConditions
    applied_count: int
    total_revenue_generated: Decimal
    created_by: str
    updated_by: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def definition(self) -> RuleDefinition:
        return RuleDefinition(
            name=self.name,
            description=self.description,
            calculation_type=self.calculation_type,
            percent_value=self.percent_value,
            fixed_amount=self.fixed_amount,
            currency=self.currency,
            priority=self.priority,
            status=self.status,
            conditions=self.conditions,
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "calculationType": self.calculation_type,
            "percentValue": str(self.percent_value),
            "fixedAmount": str(self.fixed_amount),
            "currency": self.currency,
            "priority": self.priority,
            "status": self.status,
            "conditions": self.conditions.to_document(),
            "appliedCount": self.applied_count,
            "totalRevenueGenerated": str(self.total_revenue_generated),
            "createdBy": self.created_by,
            "updatedBy": self.updated_by,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "MarginRuleSnapshot":
        return cls(
            id=int(document["id"]),
            name=document["name"],
            description=document.get("description"),
            calculation_type=document["calculationType"],
            percent_value=Decimal(document["percentValue"]),
            fixed_amount=Decimal(document["fixedAmount"]),
            currency=document["currency"],
            priority=int(document["priority"]),
            status=document["status"],
            conditions=RuleConditions.from_document(document.get("conditions")),
            applied_count=int(document.get("appliedCount", 0)),
            total_revenue_generated=Decimal(document.get("totalRevenueGenerated", "0")),
            created_by=document["createdBy"],
            updated_by=document.get("updatedBy"),
            created_at=ensure_utc(datetime.fromisoformat(document["createdAt"])),
            updated_at=ensure_utc(datetime.fromisoformat(document["updatedAt"])),
        )


@dataclass(frozen=True, slots=True)
class BookingContext:
    base_price: Decimal
    currency: str
    booking_value: Decimal
    country: str | None = None
    city: str | None = None
    star_rating: int | None = None
    check_in_date: date | None = None
    meal_type: str | None = None
    customer_type: str = "b2c"


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    applied_rule: MarginRuleSnapshot | None
    base_price: Decimal
    margin_amount: Decimal
    final_price: Decimal
    margin_percentage: Decimal
    currency: str
    matched_rule_ids: tuple[int, ...] = ()

    @property
    def is_default_margin(self) -> bool:
        return self.applied_rule is None
