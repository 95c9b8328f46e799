"""Snapshot cache of the active margin rule set."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from typing import Protocol

from services.common.cache import RedisType

from .domain import MarginRuleSnapshot
from .metrics import MARGIN_RULE_CACHE_EVENTS_TOTAL

_LOGGER = logging.getLogger(__name__)

CACHE_KEY = "margin:active-rules:v1"

RuleLoader = Callable[[], Awaitable[Sequence[MarginRuleSnapshot]]]


class RuleCacheProtocol(Protocol):
    async def get(self, loader: RuleLoader) -> tuple[MarginRuleSnapshot, ...]: ...

    async def invalidate(self) -> None: ...


class ActiveRuleCache:
    """Holds an immutable tuple of active rules for ``ttl_seconds``.

    Refreshes replace the whole tuple. A write that invalidates the cache while
    a refresh is in flight bumps the generation, and the stale load is discarded.
    When Redis is configured the serialized snapshot is shared between workers.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int,
        redis: RedisType | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._redis = redis
        self._clock = clock
        self._rules: tuple[MarginRuleSnapshot, ...] | None = None
        self._loaded_at = 0.0
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    def _fresh(self) -> bool:
        return self._rules is not None and (self._clock() - self._loaded_at) < self._ttl

    async def get(self, loader: RuleLoader) -> tuple[MarginRuleSnapshot, ...]:
        if self._ttl <= 0:
            MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="bypass").inc()
            return tuple(await loader())

        rules = self._rules
        if rules is not None and self._fresh():
            MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="hit").inc()
            return rules

        async with self._lock:
            if self._rules is not None and self._fresh():
                MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="hit").inc()
                return self._rules
            MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="miss").inc()
            generation = self._generation
            loaded = await self._read_shared()
            from_shared = loaded is not None
            if loaded is None:
                loaded = tuple(await loader())
            if generation != self._generation:
                # Invalidated mid-load; neither copy may keep the superseded rule set.
                MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="discard").inc()
                return loaded
            if not from_shared:
                await self._write_shared(loaded)
            self._rules = loaded
            self._loaded_at = self._clock()
            _LOGGER.debug("Cached %d active margin rules", len(loaded))
            return loaded

    async def invalidate(self) -> None:
        self._generation += 1
        self._rules = None
        self._loaded_at = 0.0
        MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="invalidate").inc()
        if self._redis is None:
            return
        try:
            await self._redis.delete(CACHE_KEY)
        except Exception:
            MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="error").inc()
            _LOGGER.warning("Failed to clear shared margin rule cache", exc_info=True)

    async def _read_shared(self) -> tuple[MarginRuleSnapshot, ...] | None:
        if self._redis is None:
            return None
        try:
            cached = await self._redis.get(CACHE_KEY)
        except Exception:
            MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="error").inc()
            return None
        if not cached:
            return None
        try:
            documents = json.loads(cached)
            return tuple(MarginRuleSnapshot.from_document(document) for document in documents)
        except (ValueError, KeyError, TypeError):
            MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="error").inc()
            with suppress(Exception):
                await self._redis.delete(CACHE_KEY)
            return None

    async def _write_shared(self, rules: tuple[MarginRuleSnapshot, ...]) -> None:
        if self._redis is None:
            return
        payload = json.dumps([rule.to_document() for rule in rules])
        try:
            await self._redis.set(CACHE_KEY, payload, ex=self._ttl)
        except Exception:
            MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="error").inc()
        else:
            MARGIN_RULE_CACHE_EVENTS_TOTAL.labels(event="write").inc()
