"""
Change notifier.

Core components collect ChangeEvents while their transaction runs and hand
them to the ChangeNotifier after commit. Publishing is fire-and-forget:
publish() only enqueues, and a background task delivers the queue to the
transport. A transport failure is logged and swallowed, because the change
it describes is already durable and subscribers recover by re-reading.

Invariants:
    - publish() and publish_all() never raise and never wait for delivery
    - Events are delivered in enqueue order, one at a time
    - stop() delivers everything already enqueued before returning

How to change safely:
    - Keep a single delivery task; per-channel FIFO depends on it
    - Tests that inspect the transport must await flush() first
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from .base import ChangeEvent, NotifierTransport

logger = logging.getLogger(__name__)


class ChangeNotifier:
    """Fire-and-forget facade over a NotifierTransport.

    Example:
        >>> notifier = ChangeNotifier(InMemoryNotifier())
        >>> await notifier.start()
        >>> await notifier.publish("page:p1", "page.updated", {"pageId": "p1"})
        >>> await notifier.stop()
    """

    def __init__(self, transport: NotifierTransport) -> None:
        self.transport = transport
        self._queue: asyncio.Queue[ChangeEvent] | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        """Events enqueued but not yet handed to the transport."""
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        """Start the background delivery task."""
        if self.is_running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._deliver_loop())
        logger.debug("ChangeNotifier started")

    async def stop(self) -> None:
        """Deliver pending events, then stop the delivery task."""
        if not self.is_running:
            return
        await self.flush()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._queue = None
        logger.debug("ChangeNotifier stopped")

    async def flush(self) -> None:
        """Wait until every enqueued event went to the transport."""
        if self.is_running:
            await self._queue.join()

    async def publish(self, channel_key: str, event_name: str, payload: dict[str, Any]) -> None:
        await self.publish_all([ChangeEvent(channel_key, event_name, payload)])

    async def publish_event(self, event: ChangeEvent) -> None:
        await self.publish_all([event])

    async def publish_all(self, events: Iterable[ChangeEvent]) -> None:
        if not self.is_running:
            await self.start()
        for event in events:
            self._queue.put_nowait(event)

    async def _deliver_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.transport.publish(event)
            except Exception as e:
                logger.warning(
                    f"Failed to publish change event: {e}",
                    extra={"channel": event.channel, "event": event.event},
                )
            finally:
                self._queue.task_done()
