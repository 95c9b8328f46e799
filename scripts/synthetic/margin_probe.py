#!/usr/bin/env python3
"""Synthetic probe for the margin service.

Runs a read-only simulation against the margin API, checks the returned
arithmetic and latency, and (optionally) verifies that the evaluation counter
moved. Simulations never touch rule usage counters, so the probe is safe to
schedule against production.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Sequence

import httpx

EVALUATIONS_METRIC = "margin_evaluations_total"

_METRIC_LINE = re.compile(
    r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{(?P<labels>[^}]*)\})?\s+(?P<value>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)$"
)
_LABEL_PAIR = re.compile(r'(?P<key>[a-zA-Z_][a-zA-Z0-9_]*)="(?P<value>(?:[^"\\]|\\.)*)"')


@dataclass(slots=True)
class MetricSample:
    name: str
    labels: Mapping[str, str]
    value: float


class ProbeError(RuntimeError):
    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = dict(context or {})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synthetic probe for the margin service")
    parser.add_argument(
        "--base-url",
        default=os.getenv("MARGIN_BASE_URL", "http://127.0.0.1:8000"),
        help="Base URL for the margin service (default: %(default)s or MARGIN_BASE_URL)",
    )
    parser.add_argument(
        "--metrics-path",
        default=os.getenv("MARGIN_METRICS_PATH", "/metrics"),
        help="Path to Prometheus metrics endpoint (default: %(default)s or MARGIN_METRICS_PATH)",
    )
    parser.add_argument("--skip-metrics", action="store_true", help="Skip verification of metric deltas")
    parser.add_argument("--base-price", default="500.00", help="Base price to simulate (default: %(default)s)")
    parser.add_argument("--country", default=None, help="Country for the simulated booking")
    parser.add_argument("--city", default=None, help="City for the simulated booking")
    parser.add_argument("--star-rating", type=int, default=None, help="Hotel star rating (1-5)")
    parser.add_argument(
        "--expect-rule",
        type=int,
        default=None,
        help="Fail unless this rule id wins the simulation",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=5.0,
        help="HTTP client timeout in seconds (default: %(default)s)",
    )
    parser.add_argument(
        "--max-simulate-ms",
        type=float,
        default=float(os.getenv("MARGIN_PROBE_MAX_SIMULATE_MS", "500")),
        help="Maximum allowed simulation latency in milliseconds (default: %(default)s)",
    )
    return parser.parse_args()


def parse_metrics(text: str) -> List[MetricSample]:
    samples: List[MetricSample] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _METRIC_LINE.match(stripped)
        if not match:
            continue
        labels = {pair.group("key"): pair.group("value") for pair in _LABEL_PAIR.finditer(match.group("labels") or "")}
        samples.append(MetricSample(name=match.group("name"), labels=labels, value=float(match.group("value"))))
    return samples


def total_for(samples: Sequence[MetricSample], name: str, *, labels: Mapping[str, str]) -> float:
    return sum(
        sample.value
        for sample in samples
        if sample.name == name and all(sample.labels.get(key) == value for key, value in labels.items())
    )


async def fetch_metrics(client: httpx.AsyncClient, path: str) -> List[MetricSample]:
    response = await client.get(path)
    response.raise_for_status()
    return parse_metrics(response.text)


def build_context(args: argparse.Namespace) -> Dict[str, Any]:
    context: Dict[str, Any] = {"basePrice": args.base_price}
    if args.country:
        context["country"] = args.country
    if args.city:
        context["city"] = args.city
    if args.star_rating is not None:
        context["starRating"] = args.star_rating
    return context


def _decimal(data: Mapping[str, Any], key: str) -> Decimal:
    try:
        return Decimal(str(data[key]))
    except (KeyError, InvalidOperation) as exc:
        raise ProbeError("Simulation response is missing a numeric field", context={"field": key}) from exc


def check_result(data: Mapping[str, Any], args: argparse.Namespace) -> None:
    base_price = _decimal(data, "basePrice")
    margin = _decimal(data, "marginAmount")
    final_price = _decimal(data, "finalPrice")
    if base_price + margin != final_price:
        raise ProbeError(
            "finalPrice does not equal basePrice + marginAmount",
            context={"basePrice": str(base_price), "marginAmount": str(margin), "finalPrice": str(final_price)},
        )
    if margin < 0:
        raise ProbeError("Negative margin returned", context={"marginAmount": str(margin)})
    applied = data.get("appliedRule") or {}
    if args.expect_rule is not None and applied.get("id") != args.expect_rule:
        raise ProbeError(
            "Unexpected winning rule",
            context={"expected": args.expect_rule, "actual": applied.get("id")},
        )


async def run_probe(args: argparse.Namespace) -> Dict[str, Any]:
    timeout = httpx.Timeout(args.request_timeout)
    async with httpx.AsyncClient(base_url=args.base_url, timeout=timeout) as client:
        labels = {"mode": "simulate"}
        metrics_before: Sequence[MetricSample] = ()
        if not args.skip_metrics:
            metrics_before = await fetch_metrics(client, args.metrics_path)

        context = build_context(args)
        start = time.monotonic()
        response = await client.post("/margins/simulate", json=context)
        simulate_ms = (time.monotonic() - start) * 1000.0
        if response.status_code != 200:
            raise ProbeError(
                "Simulation request failed",
                context={"status_code": response.status_code, "body": response.text},
            )
        data = response.json()
        check_result(data, args)

        if simulate_ms > args.max_simulate_ms:
            raise ProbeError(
                "Simulation latency exceeded threshold",
                context={"simulate_ms": round(simulate_ms, 2), "threshold_ms": args.max_simulate_ms},
            )

        evaluations_delta = 0.0
        if not args.skip_metrics:
            metrics_after = await fetch_metrics(client, args.metrics_path)
            evaluations_delta = total_for(metrics_after, EVALUATIONS_METRIC, labels=labels) - total_for(
                metrics_before, EVALUATIONS_METRIC, labels=labels
            )
            if evaluations_delta < 1:
                raise ProbeError(
                    f"{EVALUATIONS_METRIC} did not increment",
                    context={"delta": evaluations_delta},
                )

        applied = data.get("appliedRule") or {}
        return {
            "status": "ok",
            "context": context,
            "appliedRuleId": applied.get("id"),
            "isDefaultMargin": data.get("isDefaultMargin"),
            "marginAmount": data.get("marginAmount"),
            "finalPrice": data.get("finalPrice"),
            "simulateMs": round(simulate_ms, 2),
            "evaluationsDelta": evaluations_delta,
        }


async def main_async() -> int:
    args = parse_args()
    try:
        result = await run_probe(args)
    except ProbeError as exc:
        payload = {"status": "error", "message": str(exc), "context": exc.context}
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 1
    except httpx.HTTPError as exc:
        payload = {
            "status": "error",
            "message": str(exc),
            "context": {"exc_type": exc.__class__.__name__},
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 1
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
