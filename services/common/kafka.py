from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProducedMessage:
    topic: str
    value: dict[str, Any]
    key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


class KafkaProducerStub:
    """In-process Kafka producer; records messages instead of shipping them.

    Messages are kept in a bounded history so local runs and tests can assert
    on what would have been published.
    """

    def __init__(self, *, bootstrap_servers: str | None = None, history_size: int = 500) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._connected = False
        self._history: deque[ProducedMessage] = deque(maxlen=max(history_size, 1))

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._bootstrap_servers:
            _LOGGER.info("Kafka stub ignoring bootstrap servers %s", self._bootstrap_servers)
        self._connected = True

    async def send(
        self,
        topic: str,
        value: dict[str, Any],
        *,
        key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        if not self._connected:
            raise RuntimeError("Producer not connected")
        self._history.append(ProducedMessage(topic=topic, value=value, key=key, headers=dict(headers or {})))
        _LOGGER.debug("Produced %s key=%s", topic, key)

    @property
    def sent(self) -> list[ProducedMessage]:
        return list(self._history)

    def sent_topics(self) -> list[str]:
        return [message.topic for message in self._history]

    def messages_for(self, topic: str) -> list[ProducedMessage]:
        return [message for message in self._history if message.topic == topic]

    async def close(self) -> None:
        self._connected = False
