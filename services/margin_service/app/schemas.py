"""Pydantic schemas for the margin service."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from .domain import CalculationType, CustomerType, MealType, RuleStatus
from .validation import MAX_PRIORITY


class StarRatingRange(BaseModel):
    min: int | None = Field(default=None, ge=1, le=5)
    max: int | None = Field(default=None, ge=1, le=5)


class BookingValueRange(BaseModel):
    min: Decimal | None = Field(default=None, ge=Decimal("0"), max_digits=12, decimal_places=2)
    max: Decimal | None = Field(default=None, ge=Decimal("0"), max_digits=12, decimal_places=2)


class DateRangeWindow(BaseModel):
    start: date | None = None
    end: date | None = None


class RuleConditionsPayload(BaseModel):
    countries: list[str] = Field(default_factory=list)
    cities: list[str] = Field(default_factory=list)
    star_rating: StarRatingRange | None = Field(default=None, alias="starRating")
    booking_value: BookingValueRange | None = Field(default=None, alias="bookingValue")
    date_range: DateRangeWindow | None = Field(default=None, alias="dateRange")
    meal_types: list[MealType] = Field(default_factory=list, alias="mealTypes")
    customer_type: CustomerType = Field(default="all", alias="customerType")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("countries", "cities")
    @classmethod
    def _drop_blank(cls, values: list[str]) -> list[str]:
        return [" ".join(value.split()) for value in values if value and value.strip()]


class MarginRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    calculation_type: CalculationType = Field(default="percentage", alias="calculationType")
    percent_value: Decimal = Field(
        default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"), decimal_places=2, alias="percentValue"
    )
    fixed_amount: Decimal = Field(
        default=Decimal("0"), ge=Decimal("0"), max_digits=12, decimal_places=2, alias="fixedAmount"
    )
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    priority: int = Field(default=0, ge=0, le=100)
    status: RuleStatus = Field(default="active")
    conditions: RuleConditionsPayload = Field(default_factory=RuleConditionsPayload)
    created_by: str = Field(min_length=1, max_length=64, alias="createdBy")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().upper()


class MarginRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    calculation_type: CalculationType | None = Field(default=None, alias="calculationType")
    percent_value: Decimal | None = Field(
        default=None, ge=Decimal("0"), le=Decimal("100"), decimal_places=2, alias="percentValue"
    )
    fixed_amount: Decimal | None = Field(
        default=None, ge=Decimal("0"), max_digits=12, decimal_places=2, alias="fixedAmount"
    )
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    priority: int | None = Field(default=None, ge=0, le=100)
    status: RuleStatus | None = None
    conditions: RuleConditionsPayload | None = None
    updated_by: str | None = Field(default=None, max_length=64, alias="updatedBy")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().upper()


class ToggleRequest(BaseModel):
    updated_by: str | None = Field(default=None, max_length=64, alias="updatedBy")

    model_config = ConfigDict(populate_by_name=True)


class MarginRuleResponse(BaseModel):
    id: PositiveInt
    name: str
    description: str | None
    calculation_type: CalculationType = Field(alias="calculationType")
    percent_value: Decimal = Field(alias="percentValue")
    fixed_amount: Decimal = Field(alias="fixedAmount")
    currency: str
    priority: int
    status: RuleStatus
    conditions: RuleConditionsPayload
    condition_tags: list[str] = Field(alias="conditionTags")
    specificity: int
    is_global: bool = Field(alias="isGlobal")
    applied_count: int = Field(alias="appliedCount")
    total_revenue_generated: Decimal = Field(alias="totalRevenueGenerated")
    created_by: str = Field(alias="createdBy")
    updated_by: str | None = Field(alias="updatedBy")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class MarginRuleListResponse(BaseModel):
    items: list[MarginRuleResponse]
    total: int


class ReorderRequest(BaseModel):
    ordered_ids: list[PositiveInt] = Field(min_length=1, max_length=MAX_PRIORITY, alias="orderedIds")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("ordered_ids")
    @classmethod
    def _unique_ids(cls, value: list[int]) -> list[int]:
        if len(set(value)) != len(value):
            msg = "orderedIds must not contain duplicates"
            raise ValueError(msg)
        return value


class BookingContextPayload(BaseModel):
    base_price: Decimal = Field(alias="basePrice")
    currency: str | None = None
    country: str | None = None
    city: str | None = None
    star_rating: int | None = Field(default=None, alias="starRating")
    check_in_date: date | None = Field(default=None, alias="checkInDate")
    check_out_date: date | None = Field(default=None, alias="checkOutDate")
    nights: int | None = None
    rooms: int | None = None
    meal_type: str | None = Field(default=None, alias="mealType")
    customer_type: str | None = Field(default=None, alias="customerType")
    booking_value: Decimal | None = Field(default=None, alias="bookingValue")

    model_config = ConfigDict(populate_by_name=True)


MAX_BATCH_CONTEXTS = 200


class BatchEvaluationRequest(BaseModel):
    contexts: list[BookingContextPayload] = Field(min_length=1, max_length=MAX_BATCH_CONTEXTS)


class RecordRequest(BaseModel):
    booking_id: str = Field(min_length=1, max_length=64, alias="bookingId")
    context: BookingContextPayload

    model_config = ConfigDict(populate_by_name=True)


class AppliedRuleSummary(BaseModel):
    id: PositiveInt
    name: str
    calculation_type: CalculationType = Field(alias="calculationType")
    percent_value: Decimal = Field(alias="percentValue")
    fixed_amount: Decimal = Field(alias="fixedAmount")
    priority: int
    specificity: int

    model_config = ConfigDict(populate_by_name=True)


class EvaluationResponse(BaseModel):
    applied_rule: AppliedRuleSummary | None = Field(alias="appliedRule")
    is_default_margin: bool = Field(alias="isDefaultMargin")
    base_price: Decimal = Field(alias="basePrice")
    margin_amount: Decimal = Field(alias="marginAmount")
    final_price: Decimal = Field(alias="finalPrice")
    margin_percentage: Decimal = Field(alias="marginPercentage")
    currency: str
    matched_rule_ids: list[int] = Field(default_factory=list, alias="matchedRuleIds")
    booking_id: str | None = Field(default=None, alias="bookingId")

    model_config = ConfigDict(populate_by_name=True)


class TypeBreakdownResponse(BaseModel):
    calculation_type: CalculationType = Field(alias="calculationType")
    count: int
    avg_percent_value: Decimal = Field(alias="avgPercentValue")

    model_config = ConfigDict(populate_by_name=True)


class StatsSummary(BaseModel):
    total_rules: int = Field(alias="totalRules")
    total_applied: int = Field(alias="totalApplied")
    total_revenue: Decimal = Field(alias="totalRevenue")
    avg_margin: Decimal = Field(alias="avgMargin")

    model_config = ConfigDict(populate_by_name=True)


class MarginStatsResponse(BaseModel):
    summary: StatsSummary
    by_type: list[TypeBreakdownResponse] = Field(alias="byType")

    model_config = ConfigDict(populate_by_name=True)


class CountryResponse(BaseModel):
    code: str
    name: str


class LocationsResponse(BaseModel):
    countries: list[CountryResponse]
    cities: list[str]
    total_countries: int = Field(alias="totalCountries")
    total_cities: int = Field(alias="totalCities")

    model_config = ConfigDict(populate_by_name=True)


class BatchEvaluationResponse(BaseModel):
    items: list[EvaluationResponse]
    count: int
