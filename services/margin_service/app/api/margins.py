"""API routes for managing and evaluating margin rules."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from sqlalchemy.exc import IntegrityError

from ..dependencies import get_evaluator, get_location_catalog, get_rule_service
from ..domain import EvaluationResult, MarginRuleSnapshot, Range
from ..errors import (
    CurrencyMismatchError,
    InvalidContextError,
    MarginEngineError,
    RuleConflictError,
    RuleNotFoundError,
    RuleValidationError,
)
from ..locations import HotelLocationCatalog
from ..schemas import (
    BatchEvaluationRequest,
    BatchEvaluationResponse,
    BookingContextPayload,
    CalculationType,
    EvaluationResponse,
    LocationsResponse,
    MarginRuleCreate,
    MarginRuleListResponse,
    MarginRuleResponse,
    MarginRuleUpdate,
    MarginStatsResponse,
    RecordRequest,
    ReorderRequest,
    RuleStatus,
    ToggleRequest,
)
from ..services import MarginEvaluator, MarginRuleService

router = APIRouter(prefix="/margins", tags=["margins"])


def _to_http(exc: MarginEngineError) -> HTTPException:
    if isinstance(exc, RuleValidationError):
        return HTTPException(status_code=HTTPStatus.UNPROCESSABLE_ENTITY, detail=exc.errors)
    if isinstance(exc, RuleNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Margin rule not found")
    if isinstance(exc, InvalidContextError):
        return HTTPException(status_code=HTTPStatus.UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, (RuleConflictError, CurrencyMismatchError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _bounds(bounds: Range, lower: str, upper: str) -> dict[str, Any] | None:
    if bounds.is_empty:
        return None
    return {lower: bounds.lower, upper: bounds.upper}


def _serialize(rule: MarginRuleSnapshot) -> dict[str, Any]:
    conditions = rule.conditions
    tags = list(conditions.active_dimensions()) or ["global"]
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "calculationType": rule.calculation_type,
        "percentValue": rule.percent_value,
        "fixedAmount": rule.fixed_amount,
        "currency": rule.currency,
        "priority": rule.priority,
        "status": rule.status,
        "conditions": {
            "countries": sorted(conditions.countries),
            "cities": sorted(conditions.cities),
            "starRating": _bounds(conditions.star_rating, "min", "max"),
            "bookingValue": _bounds(conditions.booking_value, "min", "max"),
            "dateRange": _bounds(conditions.date_range, "start", "end"),
            "mealTypes": sorted(conditions.meal_types),
            "customerType": conditions.customer_type,
        },
        "conditionTags": tags,
        "specificity": conditions.specificity,
        "isGlobal": conditions.is_global,
        "appliedCount": rule.applied_count,
        "totalRevenueGenerated": rule.total_revenue_generated,
        "createdBy": rule.created_by,
        "updatedBy": rule.updated_by,
        "createdAt": rule.created_at,
        "updatedAt": rule.updated_at,
    }


def _serialize_evaluation(result: EvaluationResult, booking_id: str | None = None) -> dict[str, Any]:
    rule = result.applied_rule
    applied = None
    if rule is not None:
        applied = {
            "id": rule.id,
            "name": rule.name,
            "calculationType": rule.calculation_type,
            "percentValue": rule.percent_value,
            "fixedAmount": rule.fixed_amount,
            "priority": rule.priority,
            "specificity": rule.conditions.specificity,
        }
    return {
        "appliedRule": applied,
        "isDefaultMargin": result.is_default_margin,
        "basePrice": result.base_price,
        "marginAmount": result.margin_amount,
        "finalPrice": result.final_price,
        "marginPercentage": result.margin_percentage,
        "currency": result.currency,
        "matchedRuleIds": list(result.matched_rule_ids),
        "bookingId": booking_id,
    }


def _context_mapping(payload: BookingContextPayload) -> dict[str, Any]:
    return payload.model_dump(by_alias=True, exclude_none=True)


@router.get("/locations", response_model=LocationsResponse)
async def list_locations(
    countries: str | None = Query(default=None, description="Comma-separated country names"),
    search: str | None = Query(default=None),
    catalog: HotelLocationCatalog = Depends(get_location_catalog),
) -> LocationsResponse:
    selected = [name.strip() for name in countries.split(",") if name.strip()] if countries else None
    country_entries = await catalog.resolve_countries(search)
    cities = await catalog.resolve_cities(selected)
    return LocationsResponse.model_validate(
        {
            "countries": [{"code": entry.code, "name": entry.name} for entry in country_entries],
            "cities": cities,
            "totalCountries": len(country_entries),
            "totalCities": len(cities),
        }
    )


@router.get("", response_model=MarginRuleListResponse)
async def list_margin_rules(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status_filter: RuleStatus | None = Query(default=None, alias="status"),
    calculation_type: CalculationType | None = Query(default=None, alias="calculationType"),
    search: str | None = Query(default=None),
    country: str | None = Query(default=None),
    city: str | None = Query(default=None),
    service: MarginRuleService = Depends(get_rule_service),
) -> MarginRuleListResponse:
    rules, total = await service.list_rules(
        limit=limit,
        offset=offset,
        status=status_filter,
        calculation_type=calculation_type,
        search=search.strip() if search else None,
        country=country.strip() if country else None,
        city=city.strip() if city else None,
    )
    items = [MarginRuleResponse.model_validate(_serialize(rule)) for rule in rules]
    return MarginRuleListResponse(items=items, total=total)


@router.get("/stats", response_model=MarginStatsResponse)
async def margin_stats(service: MarginRuleService = Depends(get_rule_service)) -> MarginStatsResponse:
    stats = await service.stats()
    return MarginStatsResponse.model_validate(
        {
            "summary": {
                "totalRules": stats.total_rules,
                "totalApplied": stats.total_applied,
                "totalRevenue": stats.total_revenue,
                "avgMargin": stats.avg_margin,
            },
            "byType": [
                {
                    "calculationType": entry.calculation_type,
                    "count": entry.count,
                    "avgPercentValue": entry.avg_percent_value,
                }
                for entry in stats.by_type
            ],
        }
    )


@router.post("/simulate", response_model=EvaluationResponse)
@router.post("/evaluate", response_model=EvaluationResponse)
async def evaluate_margin(
    payload: BookingContextPayload,
    evaluator: MarginEvaluator = Depends(get_evaluator),
) -> EvaluationResponse:
    try:
        context = evaluator.build_context(_context_mapping(payload))
        result = await evaluator.evaluate(context)
    except MarginEngineError as exc:
        raise _to_http(exc) from exc
    return EvaluationResponse.model_validate(_serialize_evaluation(result))


@router.post("/evaluate/batch", response_model=BatchEvaluationResponse)
async def evaluate_margins_batch(
    payload: BatchEvaluationRequest,
    evaluator: MarginEvaluator = Depends(get_evaluator),
) -> BatchEvaluationResponse:
    contexts = []
    for index, item in enumerate(payload.contexts):
        try:
            contexts.append(evaluator.build_context(_context_mapping(item)))
        except InvalidContextError as exc:
            raise _to_http(InvalidContextError(f"contexts[{index}]: {exc}")) from exc
    try:
        results = await evaluator.evaluate_many(contexts)
    except MarginEngineError as exc:
        raise _to_http(exc) from exc
    items = [EvaluationResponse.model_validate(_serialize_evaluation(result)) for result in results]
    return BatchEvaluationResponse(items=items, count=len(items))


@router.post("/record", response_model=EvaluationResponse)
async def record_margin(
    payload: RecordRequest,
    evaluator: MarginEvaluator = Depends(get_evaluator),
) -> EvaluationResponse:
    try:
        context = evaluator.build_context(_context_mapping(payload.context))
        result = await evaluator.evaluate_and_record(context, booking_id=payload.booking_id)
    except MarginEngineError as exc:
        raise _to_http(exc) from exc
    return EvaluationResponse.model_validate(_serialize_evaluation(result, payload.booking_id))


@router.post("/reorder", status_code=status.HTTP_204_NO_CONTENT)
async def reorder_margin_rules(
    payload: ReorderRequest,
    service: MarginRuleService = Depends(get_rule_service),
) -> Response:
    try:
        await service.reorder(payload.ordered_ids)
    except MarginEngineError as exc:
        raise _to_http(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("", response_model=MarginRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_margin_rule(
    payload: MarginRuleCreate,
    service: MarginRuleService = Depends(get_rule_service),
) -> MarginRuleResponse:
    try:
        rule = await service.create_rule(payload)
    except MarginEngineError as exc:
        raise _to_http(exc) from exc
    except IntegrityError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Margin rule already exists") from exc
    return MarginRuleResponse.model_validate(_serialize(rule))


@router.get("/{rule_id}", response_model=MarginRuleResponse)
async def get_margin_rule(
    rule_id: int,
    service: MarginRuleService = Depends(get_rule_service),
) -> MarginRuleResponse:
    try:
        rule = await service.get_rule(rule_id)
    except MarginEngineError as exc:
        raise _to_http(exc) from exc
    return MarginRuleResponse.model_validate(_serialize(rule))


@router.patch("/{rule_id}", response_model=MarginRuleResponse)
async def update_margin_rule(
    rule_id: int,
    payload: MarginRuleUpdate,
    service: MarginRuleService = Depends(get_rule_service),
) -> MarginRuleResponse:
    try:
        rule = await service.update_rule(rule_id, payload)
    except MarginEngineError as exc:
        raise _to_http(exc) from exc
    except IntegrityError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Margin rule already exists") from exc
    return MarginRuleResponse.model_validate(_serialize(rule))


@router.patch("/{rule_id}/toggle", response_model=MarginRuleResponse)
async def toggle_margin_rule(
    rule_id: int,
    payload: ToggleRequest | None = Body(default=None),
    service: MarginRuleService = Depends(get_rule_service),
) -> MarginRuleResponse:
    try:
        rule = await service.toggle_status(rule_id, updated_by=payload.updated_by if payload else None)
    except MarginEngineError as exc:
        raise _to_http(exc) from exc
    return MarginRuleResponse.model_validate(_serialize(rule))


@router.delete("/{rule_id}")
async def delete_margin_rule(
    rule_id: int,
    service: MarginRuleService = Depends(get_rule_service),
) -> Response:
    try:
        await service.delete_rule(rule_id)
    except MarginEngineError as exc:
        raise _to_http(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
