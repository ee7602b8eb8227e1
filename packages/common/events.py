"""Lightweight event bus wrapper for producing messages to Kafka.

Uses `confluent_kafka.Producer` when `KAFKA_BOOTSTRAP` is configured; otherwise
events are only logged so code paths remain runnable in dev/test without a broker.
"""

from .config import get_settings
from confluent_kafka import Producer
from typing import Any
import json, logging

log = logging.getLogger(__name__)


class EventBus:
    """Thin Kafka publisher with log-only mode."""

    def __init__(self, bootstrap: str | None = None) -> None:
        """Create the producer from `bootstrap` or settings; empty means log-only."""
        self.kafka_bootstrap = get_settings().KAFKA_BOOTSTRAP if bootstrap is None else bootstrap
        self._producer = Producer({"bootstrap.servers": self.kafka_bootstrap}) if self.kafka_bootstrap else None

    def publish(self, topic: str, key: str, value: dict[str, Any]) -> None:
        """Publish a message to Kafka (if configured) and log it.

        Args:
            topic: Kafka topic name.
            key: Message key (used for partitioning).
            value: JSON-serializable payload dictionary.
        """
        payload = json.dumps(value, default=str).encode("utf-8")
        if self._producer:
            self._producer.produce(topic, key=key, value=payload)
            self._producer.poll(0)
        log.info("PUBLISH topic=%s key=%s", topic, key, extra={"ctx": {"event": value}})

    def flush(self, timeout: float = 5.0) -> None:
        """Block until queued messages are delivered or `timeout` elapses."""
        if self._producer:
            self._producer.flush(timeout)
