"""Winner selection among matching margin rules."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from .domain import BookingContext, MarginRuleSnapshot, ensure_utc
from .matcher import matches

SelectionKey = tuple[int, int, datetime, int]


def selection_key(rule: MarginRuleSnapshot) -> SelectionKey:
    """Priority, then specificity, then recency; ``id`` breaks identical timestamps."""

    return (rule.priority, rule.conditions.specificity, ensure_utc(rule.created_at), rule.id)


def rank_matching(rules: Iterable[MarginRuleSnapshot], context: BookingContext) -> list[MarginRuleSnapshot]:
    """Active rules matching the context, best candidate first."""

    candidates = [rule for rule in rules if rule.is_active and matches(rule.conditions, context)]
    candidates.sort(key=selection_key, reverse=True)
    return candidates


def select_rule(rules: Iterable[MarginRuleSnapshot], context: BookingContext) -> MarginRuleSnapshot | None:
    ranked = rank_matching(rules, context)
    return ranked[0] if ranked else None
