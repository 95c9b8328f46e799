"""Data access helpers for the margin service."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .domain import (
    MarginRuleSnapshot,
    RuleConditions,
    RuleDefinition,
    ensure_utc,
    from_minor_units,
    to_minor_units,
)
from .models import MarginApplication, MarginRule


@dataclass(frozen=True, slots=True)
class TypeBreakdown:
    calculation_type: str
    count: int
    avg_percent_value: Decimal


@dataclass(frozen=True, slots=True)
class MarginStats:
    total_rules: int
    total_applied: int
    total_revenue: Decimal
    avg_margin: Decimal
    by_type: list[TypeBreakdown]


def to_snapshot(rule: MarginRule) -> MarginRuleSnapshot:
    """Detach an ORM row into an immutable snapshot."""

    return MarginRuleSnapshot(
        id=rule.id,
        name=rule.name,
        description=rule.description,
        calculation_type=rule.calculation_type,
        percent_value=from_minor_units(rule.percent_basis_points),
        fixed_amount=from_minor_units(rule.fixed_amount_cents),
        currency=rule.currency,
        priority=rule.priority,
        status=rule.status,
        conditions=RuleConditions.from_document(json.loads(rule.conditions_json or "{}")),
        applied_count=rule.applied_count,
        total_revenue_generated=from_minor_units(rule.total_revenue_cents),
        created_by=rule.created_by,
        updated_by=rule.updated_by,
        created_at=ensure_utc(rule.created_at),
        updated_at=ensure_utc(rule.updated_at),
    )


def _apply_definition(rule: MarginRule, definition: RuleDefinition) -> None:
    rule.name = definition.name
    rule.description = definition.description
    rule.calculation_type = definition.calculation_type
    rule.percent_basis_points = to_minor_units(definition.percent_value)
    rule.fixed_amount_cents = to_minor_units(definition.fixed_amount)
    rule.currency = definition.currency
    rule.priority = definition.priority
    rule.status = definition.status
    rule.conditions_json = json.dumps(definition.conditions.to_document(), sort_keys=True)


def _avg(value: object | None) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return (Decimal(str(value)) / Decimal("100")).quantize(Decimal("0.01"))


class MarginRuleRepository:
    """Persistence helpers for margin rules."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_rule(self, definition: RuleDefinition, *, created_by: str) -> MarginRule:
        rule = MarginRule(created_by=created_by)
        _apply_definition(rule, definition)
        self.session.add(rule)
        await self.session.flush()
        await self.session.refresh(rule, attribute_names=["created_at", "updated_at"])
        return rule

    async def get_rule(self, rule_id: int) -> MarginRule | None:
        result = await self.session.execute(select(MarginRule).where(MarginRule.id == rule_id))
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> MarginRule | None:
        result = await self.session.execute(select(MarginRule).where(MarginRule.name == name))
        return result.scalar_one_or_none()

    async def list_rules(
        self,
        *,
        limit: int,
        offset: int,
        status: str | None = None,
        calculation_type: str | None = None,
        search: str | None = None,
        country: str | None = None,
        city: str | None = None,
    ) -> tuple[list[MarginRule], int]:
        filters = []
        if status:
            filters.append(MarginRule.status == status)
        if calculation_type:
            filters.append(MarginRule.calculation_type == calculation_type)
        if search:
            pattern = f"%{search.lower()}%"
            filters.append(
                or_(
                    func.lower(MarginRule.name).like(pattern),
                    func.lower(func.coalesce(MarginRule.description, "")).like(pattern),
                )
            )

        base: Select[tuple[MarginRule]] = select(MarginRule).order_by(
            MarginRule.priority.desc(), MarginRule.created_at.desc(), MarginRule.id.desc()
        )
        if filters:
            base = base.where(and_(*filters))

        if country or city:
            # Condition sets live in a JSON document, so narrow in Python.
            rows = list((await self.session.execute(base)).scalars())
            wanted_country = country.casefold() if country else None
            wanted_city = city.casefold() if city else None
            narrowed = []
            for rule in rows:
                conditions = json.loads(rule.conditions_json or "{}")
                countries = {value.casefold() for value in conditions.get("countries") or ()}
                cities = {value.casefold() for value in conditions.get("cities") or ()}
                if wanted_country and wanted_country not in countries:
                    continue
                if wanted_city and wanted_city not in cities:
                    continue
                narrowed.append(rule)
            return narrowed[offset : offset + limit], len(narrowed)

        count: Select[tuple[int]] = select(func.count(MarginRule.id))
        if filters:
            count = count.where(and_(*filters))
        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(base.offset(offset).limit(limit))
        return list(result.scalars()), total

    async def list_active_rules(self) -> list[MarginRule]:
        result = await self.session.execute(
            select(MarginRule).where(MarginRule.status == "active").order_by(MarginRule.id.asc())
        )
        return list(result.scalars())

    async def replace_rule(
        self,
        rule: MarginRule,
        definition: RuleDefinition,
        *,
        updated_by: str | None,
    ) -> MarginRule:
        _apply_definition(rule, definition)
        rule.updated_by = updated_by
        await self.session.flush()
        await self.session.refresh(rule, attribute_names=["updated_at"])
        return rule

    async def set_status(self, rule: MarginRule, *, status: str, updated_by: str | None) -> MarginRule:
        rule.status = status
        rule.updated_by = updated_by
        await self.session.flush()
        await self.session.refresh(rule, attribute_names=["updated_at"])
        return rule

    async def delete_rule(self, rule: MarginRule) -> None:
        await self.session.delete(rule)
        await self.session.flush()

    async def increment_counters(self, rule_id: int, *, margin_amount: Decimal) -> bool:
        """Atomically bump usage counters; False when the rule no longer exists."""

        result = await self.session.execute(
            update(MarginRule)
            .where(MarginRule.id == rule_id)
            .values(
                applied_count=MarginRule.applied_count + 1,
                total_revenue_cents=MarginRule.total_revenue_cents + to_minor_units(margin_amount),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def application_exists(self, booking_id: str) -> bool:
        result = await self.session.execute(
            select(MarginApplication.id).where(MarginApplication.booking_id == booking_id)
        )
        return result.scalar_one_or_none() is not None

    async def add_application(
        self,
        booking_id: str,
        *,
        rule_id: int | None,
        margin_amount: Decimal,
        currency: str,
    ) -> MarginApplication:
        """Insert the booking's ledger row; a concurrent duplicate raises IntegrityError on flush."""

        application = MarginApplication(
            booking_id=booking_id,
            rule_id=rule_id,
            margin_amount_cents=to_minor_units(margin_amount),
            currency=currency,
        )
        self.session.add(application)
        await self.session.flush()
        return application

    async def reorder(self, ordered_ids: Sequence[int]) -> list[int]:
        """Assign priorities ``len - index``; return ids that do not exist."""

        result = await self.session.execute(select(MarginRule.id).where(MarginRule.id.in_(list(ordered_ids))))
        known = set(result.scalars())
        missing = [rule_id for rule_id in ordered_ids if rule_id not in known]
        if missing:
            return missing
        total = len(ordered_ids)
        for index, rule_id in enumerate(ordered_ids):
            await self.session.execute(
                update(MarginRule)
                .where(MarginRule.id == rule_id)
                .values(priority=total - index)
                .execution_options(synchronize_session=False)
            )
        await self.session.flush()
        return []

    async def stats(self) -> MarginStats:
        active = MarginRule.status == "active"
        summary = (
            await self.session.execute(
                select(
                    func.count(MarginRule.id),
                    func.coalesce(func.sum(MarginRule.applied_count), 0),
                    func.coalesce(func.sum(MarginRule.total_revenue_cents), 0),
                    func.avg(MarginRule.percent_basis_points),
                ).where(active)
            )
        ).one()
        grouped = await self.session.execute(
            select(
                MarginRule.calculation_type,
                func.count(MarginRule.id),
                func.avg(MarginRule.percent_basis_points),
            )
            .where(active)
            .group_by(MarginRule.calculation_type)
            .order_by(MarginRule.calculation_type.asc())
        )
        by_type = [
            TypeBreakdown(calculation_type=row[0], count=int(row[1]), avg_percent_value=_avg(row[2]))
            for row in grouped.all()
        ]
        return MarginStats(
            total_rules=int(summary[0]),
            total_applied=int(summary[1]),
            total_revenue=from_minor_units(int(summary[2])),
            avg_margin=_avg(summary[3]),
            by_type=by_type,
        )
