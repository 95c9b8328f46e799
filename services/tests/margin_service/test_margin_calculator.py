from datetime import datetime, timezone
from decimal import Decimal

import pytest

from services.margin_service.app.calculator import compute_margin
from services.margin_service.app.domain import MarginRuleSnapshot, RuleConditions

_DEFAULT_PERCENT = Decimal("15")


def _rule(calculation_type: str, *, percent: str = "0", fixed: str = "0") -> MarginRuleSnapshot:
    created_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
    return MarginRuleSnapshot(
        id=1,
        name=f"{calculation_type} rule",
        description=None,
        calculation_type=calculation_type,
        percent_value=Decimal(percent),
        fixed_amount=Decimal(fixed),
        currency="SAR",
        priority=0,
        status="active",
        conditions=RuleConditions(),
        applied_count=0,
        total_revenue_generated=Decimal("0"),
        created_by="tester",
        updated_by=None,
        created_at=created_at,
        updated_at=created_at,
    )


def test_percentage_rule() -> None:
    result = compute_margin(_rule("percentage", percent="15"), Decimal("500"), _DEFAULT_PERCENT)

    assert result.margin_amount == Decimal("75.00")
    assert result.final_price == Decimal("575.00")
    assert result.margin_percentage == Decimal("15.00")


def test_fixed_rule_ignores_base_price() -> None:
    result = compute_margin(_rule("fixed", fixed="50"), Decimal("1234.56"), _DEFAULT_PERCENT)

    assert result.margin_amount == Decimal("50.00")
    assert result.final_price == Decimal("1284.56")


def test_hybrid_rule_adds_percentage_and_fixed_parts() -> None:
    result = compute_margin(_rule("hybrid", percent="5", fixed="20"), Decimal("1000"), _DEFAULT_PERCENT)

    assert result.margin_amount == Decimal("70.00")
    assert result.final_price == Decimal("1070.00")
    assert result.margin_percentage == Decimal("7.00")


def test_default_margin_applies_without_rule() -> None:
    result = compute_margin(None, Decimal("200"), _DEFAULT_PERCENT)

    assert result.margin_amount == Decimal("30.00")
    assert result.final_price == Decimal("230.00")


def test_amounts_round_half_up_to_cents() -> None:
    result = compute_margin(_rule("percentage", percent="12.5"), Decimal("0.99"), _DEFAULT_PERCENT)

    # 0.12375 rounds to 0.12; 0.125 rounds away from zero.
    assert result.margin_amount == Decimal("0.12")
    half = compute_margin(_rule("percentage", percent="12.5"), Decimal("1.00"), _DEFAULT_PERCENT)
    assert half.margin_amount == Decimal("0.13")
    assert half.final_price == Decimal("1.13")


def test_zero_percent_rule_yields_no_margin() -> None:
    result = compute_margin(_rule("percentage", percent="0"), Decimal("300"), _DEFAULT_PERCENT)

    assert result.margin_amount == Decimal("0.00")
    assert result.final_price == Decimal("300.00")


def test_negative_base_price_is_rejected() -> None:
    with pytest.raises(ValueError):
        compute_margin(None, Decimal("-1"), _DEFAULT_PERCENT)


@pytest.mark.parametrize(
    "rule",
    [None, _rule("percentage", percent="12.5"), _rule("hybrid", percent="5", fixed="20")],
    ids=["default", "percentage", "hybrid"],
)
def test_margin_grows_with_base_price(rule) -> None:
    prices = [Decimal("0.01"), Decimal("10"), Decimal("199.99"), Decimal("200"), Decimal("12500.50")]
    results = [compute_margin(rule, price, _DEFAULT_PERCENT) for price in prices]

    margins = [result.margin_amount for result in results]
    assert margins == sorted(margins)
    for price, result in zip(prices, results):
        assert result.final_price >= price


def test_fixed_margin_is_constant_in_base_price() -> None:
    rule = _rule("fixed", fixed="35.5")

    margins = {compute_margin(rule, Decimal(price), _DEFAULT_PERCENT).margin_amount for price in ("1", "99.99", "5000")}

    assert margins == {Decimal("35.50")}
