"""
Base protocol and types for change notification.

This module defines the NotifierTransport protocol that all transports must
implement, along with the ChangeEvent record and channel key helpers.

Invariants:
    - ChangeEvent is immutable once created
    - Events published to the same channel are delivered in publish order
    - A transport never raises into core operations (see ChangeNotifier)

How to change safely:
    - Protocol changes require updating all implementations
    - Channel key formats are part of the subscriber contract; never rename
"""

from __future__ import annotations

import json
import time
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig


class NotifierError(Exception):
    """Base exception for notifier transports."""

    pass


class NotifierConnectionError(NotifierError):
    """Transport is not connected or the connection failed."""

    pass


def page_channel(page_id: str) -> str:
    return f"page:{page_id}"


def database_channel(database_id: str) -> str:
    return f"database:{database_id}"


def user_channel(owner_id: str) -> str:
    return f"user:{owner_id}"


@dataclass(frozen=True)
class ChangeEvent:
    """One change event addressed to a channel.

    Attributes:
        channel: Channel key, e.g. "page:abc"
        event: Event name, e.g. "block.updated"
        payload: JSON-serializable event body
        timestamp_ms: When the event was created
    """

    channel: str
    event: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "event": self.event,
            "payload": self.payload,
            "timestamp_ms": self.timestamp_ms,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")


@runtime_checkable
class NotifierTransport(Protocol):
    """Protocol for change notifier transports.

    Ordering contract:
        - Events with the same channel are delivered in publish order

    Example:
        >>> transport = InMemoryNotifier()
        >>> await transport.connect()
        >>> await transport.publish(ChangeEvent("page:p1", "page.archived", {}))
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the transport.

        Raises:
            NotifierConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending events and release resources."""
        ...

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """Deliver one event.

        Raises:
            NotifierConnectionError: If not connected
            NotifierError: For other delivery failures
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected."""
        ...


def create_notifier_transport(config: ServerConfig) -> NotifierTransport:
    """Factory function to create a transport from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import NotifierBackend
    from .kafka import KafkaNotifier
    from .memory import InMemoryNotifier

    if config.notifier_backend == NotifierBackend.MEMORY:
        return InMemoryNotifier()
    elif config.notifier_backend == NotifierBackend.KAFKA:
        return KafkaNotifier(config.kafka)
    else:
        raise ValueError(f"Unsupported notifier backend: {config.notifier_backend}")
