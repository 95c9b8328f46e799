"""Prometheus metrics for the margin service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram


MARGIN_EVALUATIONS_TOTAL: Final = Counter(
    "margin_evaluations_total",
    "Number of margin evaluations by mode and outcome.",
    labelnames=("mode", "outcome"),
)

MARGIN_EVALUATION_SECONDS: Final = Histogram(
    "margin_evaluation_seconds",
    "Latency to select a rule and compute a margin.",
    labelnames=("mode",),
    buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1),
)

MARGIN_RULE_WRITES_TOTAL: Final = Counter(
    "margin_rule_writes_total",
    "Number of margin rule writes by action.",
    labelnames=("action",),
)

MARGIN_RULE_CACHE_EVENTS_TOTAL: Final = Counter(
    "margin_rule_cache_events_total",
    "Count of active rule cache interactions.",
    labelnames=("event",),
)

MARGIN_REVENUE_RECORDED_TOTAL: Final = Counter(
    "margin_revenue_recorded_total",
    "Margin amount recorded against applied rules, in pricing currency units.",
    labelnames=("currency",),
)


def outcome_label(rule_applied: bool) -> str:
    return "rule" if rule_applied else "default"
