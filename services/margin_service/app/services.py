"""Service layer for margin rule management and evaluation."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import replace
from decimal import Decimal
from time import perf_counter
from typing import Any

from sqlalchemy.exc import IntegrityError

from services.common import get_tracer

from .calculator import compute_margin
from .context import parse_booking_context
from .domain import (
    BookingContext,
    EvaluationResult,
    MarginRuleSnapshot,
    Range,
    RuleConditions,
    RuleDefinition,
)
from .errors import (
    CurrencyMismatchError,
    DuplicateBookingError,
    RuleConflictError,
    RuleNotFoundError,
    RuleValidationError,
)
from .events import MarginEventPublisher
from .locations import LocationCatalogProtocol
from .metrics import (
    MARGIN_EVALUATION_SECONDS,
    MARGIN_EVALUATIONS_TOTAL,
    MARGIN_REVENUE_RECORDED_TOTAL,
    MARGIN_RULE_WRITES_TOTAL,
    outcome_label,
)
from .repository import MarginRuleRepository, MarginStats, to_snapshot
from .rule_cache import RuleCacheProtocol
from .schemas import MarginRuleCreate, MarginRuleUpdate, RuleConditionsPayload
from .selector import rank_matching
from .validation import MAX_PRIORITY, validate_rule_definition

_LOGGER = logging.getLogger(__name__)
_TRACER = get_tracer(__name__)


def conditions_from_payload(payload: RuleConditionsPayload) -> RuleConditions:
    star = payload.star_rating
    value = payload.booking_value
    window = payload.date_range
    return RuleConditions(
        countries=frozenset(payload.countries),
        cities=frozenset(payload.cities),
        star_rating=Range(star.min, star.max) if star else Range(),
        booking_value=Range(value.min, value.max) if value else Range(),
        date_range=Range(window.start, window.end) if window else Range(),
        meal_types=frozenset(payload.meal_types),
        customer_type=payload.customer_type,
    )


class MarginRuleService:
    """Authoring operations on margin rules."""

    def __init__(
        self,
        repository: MarginRuleRepository,
        catalog: LocationCatalogProtocol,
        *,
        rule_cache: RuleCacheProtocol | None = None,
        event_publisher: MarginEventPublisher | None = None,
        default_currency: str = "SAR",
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.rule_cache = rule_cache
        self.event_publisher = event_publisher
        self.default_currency = default_currency

    async def _after_write(self, action: str) -> None:
        # Commit first so a cache refresh cannot read the pre-write state.
        await self.repository.session.commit()
        if self.rule_cache is not None:
            await self.rule_cache.invalidate()
        MARGIN_RULE_WRITES_TOTAL.labels(action=action).inc()

    async def _ensure_unique_name(self, name: str, *, rule_id: int | None = None) -> None:
        existing = await self.repository.get_by_name(name)
        if existing is not None and existing.id != rule_id:
            raise RuleConflictError(f"A rule named {name!r} already exists")

    async def get_rule(self, rule_id: int) -> MarginRuleSnapshot:
        rule = await self.repository.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return to_snapshot(rule)

    async def list_rules(self, **filters: Any) -> tuple[list[MarginRuleSnapshot], int]:
        rules, total = await self.repository.list_rules(**filters)
        return [to_snapshot(rule) for rule in rules], total

    async def create_rule(self, payload: MarginRuleCreate) -> MarginRuleSnapshot:
        definition = RuleDefinition(
            name=payload.name,
            description=payload.description,
            calculation_type=payload.calculation_type,
            percent_value=payload.percent_value,
            fixed_amount=payload.fixed_amount,
            currency=payload.currency or self.default_currency,
            priority=payload.priority,
            status=payload.status,
            conditions=conditions_from_payload(payload.conditions),
        )
        definition = await validate_rule_definition(definition, self.catalog)
        await self._ensure_unique_name(definition.name)
        rule = await self.repository.create_rule(definition, created_by=payload.created_by.strip())
        snapshot = to_snapshot(rule)
        await self._after_write("create")
        _LOGGER.info("Created margin rule %s (%s) by %s", snapshot.id, snapshot.name, snapshot.created_by)
        if self.event_publisher is not None:
            await self.event_publisher.rule_changed(snapshot, change_type="created", actor=snapshot.created_by)
        return snapshot

    async def update_rule(self, rule_id: int, payload: MarginRuleUpdate) -> MarginRuleSnapshot:
        rule = await self.repository.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        current = to_snapshot(rule).definition()
        provided = payload.model_fields_set
        changes: dict[str, Any] = {}
        for field_name in (
            "name",
            "description",
            "calculation_type",
            "percent_value",
            "fixed_amount",
            "currency",
            "priority",
            "status",
        ):
            if field_name not in provided:
                continue
            value = getattr(payload, field_name)
            if value is None and field_name != "description":
                raise RuleValidationError([f"{field_name} cannot be null"])
            changes[field_name] = value
        if "conditions" in provided:
            changes["conditions"] = conditions_from_payload(payload.conditions or RuleConditionsPayload())

        definition = await validate_rule_definition(replace(current, **changes), self.catalog)
        await self._ensure_unique_name(definition.name, rule_id=rule_id)
        updated = await self.repository.replace_rule(rule, definition, updated_by=payload.updated_by)
        snapshot = to_snapshot(updated)
        await self._after_write("update")
        _LOGGER.info("Updated margin rule %s (%s)", snapshot.id, ", ".join(sorted(provided)) or "no fields")
        if self.event_publisher is not None:
            await self.event_publisher.rule_changed(snapshot, change_type="updated", actor=payload.updated_by)
        return snapshot

    async def toggle_status(self, rule_id: int, *, updated_by: str | None = None) -> MarginRuleSnapshot:
        rule = await self.repository.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        new_status = "inactive" if rule.status == "active" else "active"
        updated = await self.repository.set_status(rule, status=new_status, updated_by=updated_by)
        snapshot = to_snapshot(updated)
        await self._after_write("toggle")
        _LOGGER.info("Margin rule %s is now %s", snapshot.id, snapshot.status)
        if self.event_publisher is not None:
            change = "activated" if snapshot.is_active else "deactivated"
            await self.event_publisher.rule_changed(snapshot, change_type=change, actor=updated_by)
        return snapshot

    async def delete_rule(self, rule_id: int) -> None:
        """Hard delete; rules that have been applied must be deactivated instead."""

        rule = await self.repository.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        if rule.applied_count > 0:
            raise RuleConflictError(
                f"Margin rule {rule_id} has been applied {rule.applied_count} times; deactivate it instead"
            )
        snapshot = to_snapshot(rule)
        await self.repository.delete_rule(rule)
        await self._after_write("delete")
        _LOGGER.info("Deleted margin rule %s (%s)", snapshot.id, snapshot.name)
        if self.event_publisher is not None:
            await self.event_publisher.rule_deleted(snapshot)

    async def reorder(self, ordered_ids: list[int]) -> None:
        # Priorities are assigned len - index, so the list length bounds the top priority.
        if len(ordered_ids) > MAX_PRIORITY:
            raise RuleValidationError([f"at most {MAX_PRIORITY} rules can be reordered at once"])
        missing = await self.repository.reorder(ordered_ids)
        if missing:
            raise RuleNotFoundError(missing[0])
        await self._after_write("reorder")
        if self.event_publisher is not None:
            await self.event_publisher.rules_reordered(list(ordered_ids))

    async def stats(self) -> MarginStats:
        return await self.repository.stats()


class MarginEvaluator:
    """Selects the winning rule for a booking context and prices it.

    ``evaluate`` backs both the booking pipeline quote and the admin simulator
    and never touches usage counters. ``evaluate_and_record`` is the booking
    completion path: it increments the winner's counters inside the caller's
    transaction.
    """

    def __init__(
        self,
        repository: MarginRuleRepository,
        *,
        rule_cache: RuleCacheProtocol | None = None,
        default_percent: Decimal = Decimal("15"),
        pricing_currency: str = "SAR",
        event_publisher: MarginEventPublisher | None = None,
    ) -> None:
        self.repository = repository
        self.rule_cache = rule_cache
        self.default_percent = default_percent
        self.pricing_currency = pricing_currency
        self.event_publisher = event_publisher

    def build_context(self, data: Mapping[str, Any]) -> BookingContext:
        return parse_booking_context(data, default_currency=self.pricing_currency)

    async def _load_active(self) -> list[MarginRuleSnapshot]:
        return [to_snapshot(rule) for rule in await self.repository.list_active_rules()]

    async def active_rules(self) -> tuple[MarginRuleSnapshot, ...]:
        if self.rule_cache is None:
            return tuple(await self._load_active())
        return await self.rule_cache.get(self._load_active)

    def price(
        self,
        rule: MarginRuleSnapshot | None,
        context: BookingContext,
        *,
        matched_rule_ids: tuple[int, ...] = (),
    ) -> EvaluationResult:
        if rule is not None and rule.calculation_type in ("fixed", "hybrid") and rule.currency != context.currency:
            raise CurrencyMismatchError(rule_currency=rule.currency, pricing_currency=context.currency)
        computation = compute_margin(rule, context.base_price, self.default_percent)
        return EvaluationResult(
            applied_rule=rule,
            base_price=computation.base_price,
            margin_amount=computation.margin_amount,
            final_price=computation.final_price,
            margin_percentage=computation.margin_percentage,
            currency=context.currency,
            matched_rule_ids=matched_rule_ids,
        )

    def _evaluate_against(
        self,
        rules: Sequence[MarginRuleSnapshot],
        context: BookingContext,
        *,
        mode: str,
    ) -> EvaluationResult:
        ranked = rank_matching(rules, context)
        winner = ranked[0] if ranked else None
        try:
            result = self.price(winner, context, matched_rule_ids=tuple(rule.id for rule in ranked))
        except CurrencyMismatchError:
            MARGIN_EVALUATIONS_TOTAL.labels(mode=mode, outcome="currency_mismatch").inc()
            raise
        MARGIN_EVALUATIONS_TOTAL.labels(mode=mode, outcome=outcome_label(winner is not None)).inc()
        return result

    async def evaluate(self, context: BookingContext, *, mode: str = "simulate") -> EvaluationResult:
        started = perf_counter()
        with _TRACER.start_as_current_span("margin.evaluate") as span:
            rules = await self.active_rules()
            result = self._evaluate_against(rules, context, mode=mode)
            winner = result.applied_rule
            span.set_attribute("margin.rule_id", winner.id if winner is not None else 0)
            span.set_attribute("margin.candidates", len(result.matched_rule_ids))
        MARGIN_EVALUATION_SECONDS.labels(mode=mode).observe(perf_counter() - started)
        return result

    async def evaluate_many(self, contexts: Sequence[BookingContext]) -> list[EvaluationResult]:
        """Price a list of contexts (e.g. hotel search results) against one active rule snapshot."""

        started = perf_counter()
        with _TRACER.start_as_current_span("margin.evaluate_many") as span:
            rules = await self.active_rules()
            results = [self._evaluate_against(rules, context, mode="batch") for context in contexts]
            span.set_attribute("margin.batch_size", len(results))
        MARGIN_EVALUATION_SECONDS.labels(mode="batch").observe(perf_counter() - started)
        return results

    async def evaluate_and_record(self, context: BookingContext, *, booking_id: str) -> EvaluationResult:
        """Evaluate, then record the margin once per booking id.

        Counters and the booking's ledger row are committed before
        ``margin.rule.applied.v1`` is published. A booking id that was already
        recorded raises ``DuplicateBookingError`` and changes nothing.
        """

        if await self.repository.application_exists(booking_id):
            raise DuplicateBookingError(booking_id)
        result = await self.evaluate(context, mode="record")
        rule = result.applied_rule
        try:
            await self.repository.add_application(
                booking_id,
                rule_id=rule.id if rule is not None else None,
                margin_amount=result.margin_amount,
                currency=result.currency,
            )
        except IntegrityError as exc:
            raise DuplicateBookingError(booking_id) from exc
        if rule is not None and not await self.repository.increment_counters(
            rule.id, margin_amount=result.margin_amount
        ):
            raise RuleNotFoundError(rule.id)
        await self.repository.session.commit()

        if rule is not None:
            MARGIN_REVENUE_RECORDED_TOTAL.labels(currency=result.currency).inc(float(result.margin_amount))
            _LOGGER.info(
                "Recorded margin %s %s from rule %s for booking %s",
                result.margin_amount,
                result.currency,
                rule.id,
                booking_id,
            )
        else:
            _LOGGER.info("Booking %s priced with the default margin", booking_id)
        if self.event_publisher is not None:
            await self.event_publisher.rule_applied(result, booking_id=booking_id)
        return result
