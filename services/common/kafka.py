"""In-process stand-ins for the Kafka producer and consumer."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Sequence

_LOGGER = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[None]]


class _InMemoryBroker:
    """Topic dispatcher shared by the stubbed Kafka components."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._subscribers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                self._subscribers.pop(topic, None)

    async def publish(self, topic: str, message: dict[str, Any]) -> int:
        delivered = 0
        # Copy so handlers may unsubscribe while being dispatched.
        for handler in list(self._subscribers.get(topic, [])):
            try:
                await handler(message)
            except Exception:
                _LOGGER.exception("Consumer for %s failed to process message", topic)
                continue
            delivered += 1
        return delivered


_BROKER = _InMemoryBroker()


class KafkaProducerStub:
    """Producer facade; messages are dispatched to in-process consumers."""

    def __init__(self, *, bootstrap_servers: str | None = None, **_kwargs: Any) -> None:
        self.bootstrap_servers = bootstrap_servers
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self.bootstrap_servers:
            _LOGGER.info("Kafka producer using in-process broker instead of %s", self.bootstrap_servers)
        self._connected = True

    async def send(self, topic: str, value: dict[str, Any]) -> None:
        if not self._connected:
            raise RuntimeError("Producer not connected")
        delivered = await _BROKER.publish(topic, value)
        _LOGGER.debug("Published %s to %d consumer(s)", topic, delivered)

    async def close(self) -> None:
        self._connected = False


class KafkaConsumerStub:
    """Consumer facade dispatching ``(topic, message)`` pairs to one handler.

    ``processed`` counts messages per topic that the handler accepted without raising.
    """

    def __init__(
        self,
        topics: Sequence[str],
        handler: Callable[[str, dict[str, Any]], Awaitable[None]],
    ) -> None:
        self.topics = tuple(dict.fromkeys(topics))
        self.processed: dict[str, int] = dict.fromkeys(self.topics, 0)
        self._handler = handler
        self._bindings: dict[str, Handler] = {}

    @property
    def running(self) -> bool:
        return bool(self._bindings)

    def _bind(self, topic: str) -> Handler:
        async def deliver(message: dict[str, Any]) -> None:
            await self._handler(topic, message)
            self.processed[topic] += 1

        return deliver

    async def start(self) -> None:
        if self.running:
            return
        for topic in self.topics:
            binding = self._bind(topic)
            _BROKER.subscribe(topic, binding)
            self._bindings[topic] = binding
        _LOGGER.info("Kafka consumer subscribed to %s", ", ".join(self.topics))

    async def stop(self) -> None:
        while self._bindings:
            topic, binding = self._bindings.popitem()
            _BROKER.unsubscribe(topic, binding)
