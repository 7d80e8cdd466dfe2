"""
Change Notifier for Folio.

Publishes change events so that connected clients refresh affected views.
Transports:
- In-memory (tests, single-process deployments)
- Kafka/Redpanda (multi-process deployments)

Invariants:
    - Events are published only after the transaction that produced them commits
    - Per-channel FIFO ordering
    - Transport failures never fail the core operation

How to change safely:
    - New transports must implement the NotifierTransport protocol
    - Keep channel key formats stable
"""

from .base import (
    ChangeEvent,
    NotifierConnectionError,
    NotifierError,
    NotifierTransport,
    create_notifier_transport,
    database_channel,
    page_channel,
    user_channel,
)
from .kafka import KafkaNotifier
from .memory import InMemoryNotifier
from .notifier import ChangeNotifier

__all__ = [
    # Protocol and types
    "NotifierTransport",
    "ChangeEvent",
    "NotifierError",
    "NotifierConnectionError",
    # Channels
    "page_channel",
    "database_channel",
    "user_channel",
    # Factory
    "create_notifier_transport",
    # Implementations
    "ChangeNotifier",
    "InMemoryNotifier",
    "KafkaNotifier",
]
