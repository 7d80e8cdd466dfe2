"""
In-memory notifier transport.

This module provides a process-local transport for:
- Unit and integration tests asserting emitted events
- Single-process deployments whose realtime gateway runs in-process
- Local development without external dependencies

Invariants:
    - All events are lost on process exit
    - Retained history is bounded by history_limit (live fan-out is not)
    - Per-channel FIFO: subscribers see a channel's events in publish order

How to change safely:
    - Keep interface compatible with the NotifierTransport protocol
    - Testing helpers must not change delivery semantics
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from collections.abc import AsyncIterator

from .base import ChangeEvent, NotifierConnectionError

logger = logging.getLogger(__name__)


class InMemoryNotifier:
    """In-memory implementation of NotifierTransport.

    Every published event is fanned out to the queues of live subscribers of
    its channel. The most recent history_limit events are also kept for inspection;
    older ones are dropped.

    Example:
        >>> notifier = InMemoryNotifier()
        >>> await notifier.connect()
        >>> async for event in notifier.subscribe("page:p1"):
        ...     print(event.event, event.payload)
    """

    def __init__(self, history_limit: int = 1000) -> None:
        self._connected = False
        self.history_limit = history_limit
        self._published = 0
        self._log: deque[ChangeEvent] = deque(maxlen=history_limit)
        self._subscribers: dict[str, list[asyncio.Queue[ChangeEvent | None]]] = defaultdict(list)
        self._pending_failure: Exception | None = None

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryNotifier connected")

    async def close(self) -> None:
        """Close and end all subscriptions."""
        self._connected = False
        for queues in self._subscribers.values():
            for queue in queues:
                queue.put_nowait(None)
        self._subscribers.clear()
        logger.debug("InMemoryNotifier closed")

    async def publish(self, event: ChangeEvent) -> None:
        if not self._connected:
            raise NotifierConnectionError("Not connected")

        if self._pending_failure is not None:
            failure, self._pending_failure = self._pending_failure, None
            raise failure

        self._published += 1
        self._log.append(event)
        for queue in self._subscribers.get(event.channel, []):
            queue.put_nowait(event)

        logger.debug(
            "Event published to in-memory notifier",
            extra={"channel": event.channel, "event": event.event},
        )

    async def subscribe(self, channel: str) -> AsyncIterator[ChangeEvent]:
        """Yield events published to channel from now on, until close()."""
        if not self._connected:
            raise NotifierConnectionError("Not connected")

        queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._subscribers[channel].append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            queues = self._subscribers.get(channel)
            if queues and queue in queues:
                queues.remove(queue)
                if not queues:
                    del self._subscribers[channel]

    # Testing helpers

    def get_events(self, channel: str | None = None) -> list[ChangeEvent]:
        """All published events, optionally for one channel (testing helper)."""
        if channel is None:
            return list(self._log)
        return [e for e in self._log if e.channel == channel]

    def get_event_names(self, channel: str | None = None) -> list[str]:
        """Event names in publish order (testing helper)."""
        return [e.event for e in self.get_events(channel)]

    def get_event_count(self, channel: str | None = None) -> int:
        return len(self.get_events(channel))

    def clear(self) -> None:
        """Forget all published events (testing helper)."""
        self._published = 0
        self._log.clear()

    def fail_next(self, exception: Exception) -> None:
        """Make the next publish() raise exception (testing helper)."""
        self._pending_failure = exception

    async def wait_for_events(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least count events were published (testing helper).

        Returns:
            True if count reached, False if timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            if self._published >= count:
                return True
            await asyncio.sleep(0.01)
        return False
