"""
Kafka/Redpanda notifier transport.

Publishes change events to a single topic consumed by the realtime gateway.
It works with:
- Apache Kafka
- Amazon MSK
- Redpanda

Invariants:
    - The channel key is the Kafka message key, so all events of one
      channel land on one partition and keep their publish order
    - Event values are UTF-8 JSON (ChangeEvent.to_dict())
    - publish() returns once the event is in the producer batch; broker
      acknowledgements are checked in a callback, and close() flushes

How to change safely:
    - Changing the key scheme breaks per-channel ordering for consumers
    - Test with an actual broker before deploying
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError

from .base import ChangeEvent, NotifierConnectionError, NotifierError

logger = logging.getLogger(__name__)


def _log_delivery_failure(event: ChangeEvent, delivery: asyncio.Future) -> None:
    if delivery.cancelled() or delivery.exception() is None:
        return
    logger.warning(
        f"Kafka delivery failed: {delivery.exception()}",
        extra={"channel": event.channel, "event": event.event},
    )


class KafkaNotifier:
    """Kafka implementation of NotifierTransport.

    Uses aiokafka's producer. Change events are advisory, so the default
    configuration waits for the partition leader only.

    Example:
        >>> notifier = KafkaNotifier(KafkaConfig(brokers="localhost:9092"))
        >>> await notifier.connect()
        >>> await notifier.publish(ChangeEvent("page:p1", "page.moved", {}))
    """

    def __init__(self, config: Any) -> None:
        """Initialize Kafka notifier.

        Args:
            config: KafkaConfig instance with connection settings
        """
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to Kafka."""
        return self._connected and self._producer is not None

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            NotifierConnectionError: If connection fails
        """
        if self._connected:
            return

        producer_config: dict[str, Any] = {
            "bootstrap_servers": self.config.brokers,
            "acks": int(self.config.acks) if self.config.acks.isdigit() else self.config.acks,
            "linger_ms": self.config.linger_ms,
            "request_timeout_ms": 30000,
            "retry_backoff_ms": 100,
        }

        if self.config.security_protocol != "PLAINTEXT":
            producer_config["security_protocol"] = self.config.security_protocol

        if self.config.sasl_mechanism:
            producer_config["sasl_mechanism"] = self.config.sasl_mechanism
            producer_config["sasl_plain_username"] = self.config.sasl_username
            producer_config["sasl_plain_password"] = self.config.sasl_password

        if self.config.ssl_cafile:
            producer_config["ssl_cafile"] = self.config.ssl_cafile

        try:
            self._producer = AIOKafkaProducer(**producer_config)
            await self._producer.start()
            self._connected = True
        except KafkaError as e:
            self._producer = None
            self._connected = False
            raise NotifierConnectionError(f"Failed to connect to Kafka: {e}") from e

        logger.info(
            "Connected to Kafka",
            extra={"brokers": self.config.brokers, "topic": self.config.topic},
        )

    async def close(self) -> None:
        """Flush pending events and stop the producer."""
        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka notifier closed")

    async def publish(self, event: ChangeEvent) -> None:
        if not self._producer:
            raise NotifierConnectionError("Not connected to Kafka")

        try:
            delivery = await self._producer.send(
                self.config.topic,
                value=event.to_bytes(),
                key=event.channel.encode("utf-8"),
                headers=[("event", event.event.encode("utf-8"))],
            )
        except KafkaConnectionError as e:
            self._connected = False
            raise NotifierConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise NotifierError(f"Kafka send failed: {e}") from e

        delivery.add_done_callback(partial(_log_delivery_failure, event))

        logger.debug(
            "Event queued for Kafka",
            extra={"topic": self.config.topic, "channel": event.channel, "event": event.event},
        )
