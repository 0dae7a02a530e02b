"""Lightweight event bus wrapper for producing messages to Kafka.

Uses `confluent_kafka.Producer` when `KAFKA_BOOTSTRAP` is configured; otherwise events
are only logged so that code paths remain runnable in dev/test without a broker.
"""

from .config import get_settings
from confluent_kafka import Producer
from functools import lru_cache
from typing import Any, Protocol
import json, logging

log = logging.getLogger(__name__)


class Publisher(Protocol):
    def publish(self, topic: str, key: str, value: dict[str, Any]) -> None: ...


class EventBus:
    """Thin Kafka publisher with a log-only mode."""

    def __init__(self, bootstrap: str | None = None, topic_prefix: str | None = None) -> None:
        """Initialize producer from arguments or settings."""
        s = get_settings()
        self.kafka_bootstrap = bootstrap if bootstrap is not None else s.KAFKA_BOOTSTRAP
        self.topic_prefix = topic_prefix if topic_prefix is not None else s.EVENT_TOPIC_PREFIX
        self._producer = Producer({"bootstrap.servers": self.kafka_bootstrap}) if self.kafka_bootstrap else None

    def topic(self, name: str) -> str:
        return f"{self.topic_prefix}.{name}" if self.topic_prefix else name

    def publish(self, topic: str, key: str, value: dict[str, Any]) -> None:
        """Publish a message to Kafka (or only log it in log-only mode).

        Args:
            topic: Event name; prefixed with `topic_prefix`.
            key: Message key (used for partitioning).
            value: JSON-serializable payload dictionary.
        """
        payload = json.dumps(value, default=str).encode("utf-8")
        if self._producer:
            self._producer.produce(self.topic(topic), key=key, value=payload)
            self._producer.poll(0)
        log.info("PUBLISH topic=%s key=%s value=%s", self.topic(topic), key, value)

    def flush(self, timeout: float = 5.0) -> None:
        if self._producer:
            self._producer.flush(timeout)


@lru_cache()
def get_event_bus() -> EventBus:
    """Return the process-wide `EventBus`."""
    return EventBus()
