"""Event publishing helpers for the margin service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from services.common.kafka import KafkaProducerStub

from .domain import EvaluationResult, MarginRuleSnapshot

RULE_CHANGED_TOPIC = "margin.rule.changed.v1"
RULE_APPLIED_TOPIC = "margin.rule.applied.v1"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rule_payload(rule: MarginRuleSnapshot) -> dict[str, Any]:
    document = rule.to_document()
    document["specificity"] = rule.conditions.specificity
    return document


class MarginEventPublisher:
    """Publishes margin rule domain events via the configured Kafka producer."""

    def __init__(self, producer: KafkaProducerStub | None) -> None:
        self._producer = producer

    async def _emit(self, topic: str, payload: dict[str, Any]) -> None:
        if self._producer is None:
            return
        envelope = {
            "eventType": topic,
            "occurredAt": _now_iso(),
            **payload,
        }
        await self._producer.send(topic, envelope)

    async def rule_changed(self, rule: MarginRuleSnapshot, *, change_type: str, actor: str | None) -> None:
        await self._emit(
            RULE_CHANGED_TOPIC,
            {"changeType": change_type, "actor": actor, "rule": _rule_payload(rule)},
        )

    async def rule_deleted(self, rule: MarginRuleSnapshot) -> None:
        await self._emit(
            RULE_CHANGED_TOPIC,
            {"changeType": "deleted", "actor": None, "rule": _rule_payload(rule)},
        )

    async def rules_reordered(self, ordered_ids: list[int]) -> None:
        await self._emit(RULE_CHANGED_TOPIC, {"changeType": "reordered", "orderedIds": ordered_ids})

    async def rule_applied(self, result: EvaluationResult, *, booking_id: str) -> None:
        rule = result.applied_rule
        await self._emit(
            RULE_APPLIED_TOPIC,
            {
                "bookingId": booking_id,
                "ruleId": rule.id if rule is not None else None,
                "ruleName": rule.name if rule is not None else None,
                "isDefaultMargin": result.is_default_margin,
                "basePrice": str(result.base_price),
                "marginAmount": str(result.margin_amount),
                "finalPrice": str(result.final_price),
                "currency": result.currency,
            },
        )
