"""Margin arithmetic for percentage, fixed and hybrid rules."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .domain import MarginRuleSnapshot, quantize_amount

_HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class MarginComputation:
    base_price: Decimal
    margin_amount: Decimal
    final_price: Decimal

    @property
    def margin_percentage(self) -> Decimal:
        if self.base_price <= 0:
            return Decimal("0.00")
        return quantize_amount(self.margin_amount / self.base_price * _HUNDRED)


def _percent_of(base_price: Decimal, percent: Decimal) -> Decimal:
    return base_price * percent / _HUNDRED


def compute_margin(
    rule: MarginRuleSnapshot | None,
    base_price: Decimal,
    default_percent: Decimal,
) -> MarginComputation:
    """Compute the additive markup; amounts are rounded half-up to cents."""

    if base_price < 0:
        raise ValueError("base price cannot be negative")

    if rule is None:
        raw_margin = _percent_of(base_price, default_percent)
    elif rule.calculation_type == "percentage":
        raw_margin = _percent_of(base_price, rule.percent_value)
    elif rule.calculation_type == "fixed":
        raw_margin = rule.fixed_amount
    elif rule.calculation_type == "hybrid":
        raw_margin = _percent_of(base_price, rule.percent_value) + rule.fixed_amount
    else:
        raise ValueError(f"unknown calculation type {rule.calculation_type!r}")

    margin_amount = quantize_amount(raw_margin)
    if margin_amount < 0:
        raise ValueError("margin amount cannot be negative")
    return MarginComputation(
        base_price=quantize_amount(base_price),
        margin_amount=margin_amount,
        final_price=quantize_amount(base_price + margin_amount),
    )
