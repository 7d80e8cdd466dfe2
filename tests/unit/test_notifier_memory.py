"""
Unit tests for the change notifier and its in-memory transport.

Tests cover:
- Connection lifecycle
- Per-channel logs and ordering
- Live subscriptions
- Bounded event history
- Fire-and-forget publishing through ChangeNotifier
- Background delivery with slow transports
- Kafka delivery failure logging
- Transport factory
"""

import asyncio
import json

import pytest

from engine.folio.config import NotifierBackend, ServerConfig
from engine.folio.notify import (
    ChangeEvent,
    ChangeNotifier,
    InMemoryNotifier,
    KafkaNotifier,
    NotifierConnectionError,
    NotifierTransport,
    create_notifier_transport,
    database_channel,
    page_channel,
    user_channel,
)
from engine.folio.notify.kafka import _log_delivery_failure
from engine.folio.store import EntityStore
from engine.folio.workspace import Workspace


class TestInMemoryNotifier:
    """Tests for InMemoryNotifier."""

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, notifier):
        """Test connection lifecycle."""
        assert not notifier.is_connected

        await notifier.connect()
        assert notifier.is_connected

        await notifier.close()
        assert not notifier.is_connected

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self, notifier):
        """Publish fails if not connected."""
        with pytest.raises(NotifierConnectionError):
            await notifier.publish(ChangeEvent("page:p1", "page.updated"))

    @pytest.mark.asyncio
    async def test_events_kept_per_channel(self, notifier):
        """Events are logged globally and per channel, in order."""
        await notifier.connect()

        await notifier.publish(ChangeEvent("page:p1", "block.created"))
        await notifier.publish(ChangeEvent("page:p2", "block.created"))
        await notifier.publish(ChangeEvent("page:p1", "block.updated"))

        assert notifier.get_event_count() == 3
        assert notifier.get_event_names("page:p1") == ["block.created", "block.updated"]
        assert notifier.get_event_names("page:p3") == []

        notifier.clear()
        assert notifier.get_event_count() == 0

    @pytest.mark.asyncio
    async def test_subscribe_receives_channel_events(self, notifier):
        """Subscribers see only their channel, in publish order."""
        await notifier.connect()
        received = []

        async def consume():
            async for event in notifier.subscribe("page:p1"):
                received.append(event.event)
                if len(received) == 2:
                    return

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)  # let the subscriber register

        await notifier.publish(ChangeEvent("page:p1", "first"))
        await notifier.publish(ChangeEvent("page:p2", "other"))
        await notifier.publish(ChangeEvent("page:p1", "second"))

        await asyncio.wait_for(task, timeout=1.0)
        assert received == ["first", "second"]

    @pytest.mark.asyncio
    async def test_close_ends_subscriptions(self, notifier):
        """Closing the transport ends open subscriptions."""
        await notifier.connect()
        received = []

        async def consume():
            async for event in notifier.subscribe("page:p1"):
                received.append(event)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)

        await notifier.close()

        await asyncio.wait_for(task, timeout=1.0)
        assert received == []

    @pytest.mark.asyncio
    async def test_wait_for_events(self, notifier):
        """wait_for_events reports whether the count was reached."""
        await notifier.connect()
        await notifier.publish(ChangeEvent("user:u1", "page.created"))

        assert await notifier.wait_for_events(1, timeout=0.1)
        assert not await notifier.wait_for_events(2, timeout=0.05)

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        """Only the newest history_limit events are kept; subscribers see all."""
        notifier = InMemoryNotifier(history_limit=3)
        await notifier.connect()
        received = []

        async def consume():
            async for event in notifier.subscribe("page:p1"):
                received.append(event.event)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        for i in range(5):
            await notifier.publish(ChangeEvent("page:p1", f"e{i}"))
        await notifier.publish(ChangeEvent("page:p2", "other"))

        assert notifier.get_event_names() == ["e3", "e4", "other"]
        assert notifier.get_event_names("page:p1") == ["e3", "e4"]
        assert await notifier.wait_for_events(6, timeout=0.1)
        await notifier.close()
        await asyncio.wait_for(task, timeout=1.0)
        assert received == ["e0", "e1", "e2", "e3", "e4"]

    def test_satisfies_protocol(self, notifier):
        """In-memory transport implements NotifierTransport."""
        assert isinstance(notifier, NotifierTransport)


class SlowNotifier(InMemoryNotifier):
    """In-memory transport whose deliveries take delay seconds each."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    async def publish(self, event: ChangeEvent) -> None:
        await asyncio.sleep(self.delay)
        await super().publish(event)


class TestChangeNotifier:
    """Tests for ChangeNotifier."""

    @pytest.mark.asyncio
    async def test_publish_builds_event(self, notifier):
        """publish() wraps channel, name and payload in a ChangeEvent."""
        await notifier.connect()
        change_notifier = ChangeNotifier(notifier)

        await change_notifier.publish("page:p1", "page.moved", {"pageId": "p1"})
        await change_notifier.flush()

        event = notifier.get_events()[0]
        assert event.channel == "page:p1"
        assert event.payload == {"pageId": "p1"}
        assert event.timestamp_ms > 0
        await change_notifier.stop()

    @pytest.mark.asyncio
    async def test_transport_failure_swallowed(self, notifier, caplog):
        """A failing transport never raises into the caller and is logged."""
        await notifier.connect()
        change_notifier = ChangeNotifier(notifier)
        notifier.fail_next(RuntimeError("broker down"))

        await change_notifier.publish_all([
            ChangeEvent("page:p1", "lost"),
            ChangeEvent("page:p1", "delivered"),
        ])
        await change_notifier.stop()

        assert notifier.get_event_names() == ["delivered"]
        assert "broker down" in caplog.text

    @pytest.mark.asyncio
    async def test_disconnected_transport_swallowed(self, notifier):
        """Publishing through a closed transport is logged, not raised."""
        change_notifier = ChangeNotifier(notifier)

        await change_notifier.publish("page:p1", "page.updated", {})
        await change_notifier.stop()

        assert notifier.get_event_count() == 0

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_for_delivery(self):
        """publish() returns while a slow transport is still delivering."""
        transport = SlowNotifier(delay=0.2)
        await transport.connect()
        change_notifier = ChangeNotifier(transport)
        await change_notifier.start()

        loop = asyncio.get_running_loop()
        started = loop.time()
        await change_notifier.publish_all([ChangeEvent("page:p1", f"e{i}") for i in range(3)])
        elapsed = loop.time() - started

        assert elapsed < 0.1
        assert transport.get_event_count() == 0
        assert change_notifier.pending > 0
        await change_notifier.stop()

    @pytest.mark.asyncio
    async def test_stop_delivers_pending_in_order(self):
        """stop() hands every queued event to the transport, in order."""
        transport = SlowNotifier(delay=0.01)
        await transport.connect()
        change_notifier = ChangeNotifier(transport)

        for i in range(5):
            await change_notifier.publish("page:p1", f"e{i}", {})
        await change_notifier.stop()

        assert transport.get_event_names("page:p1") == ["e0", "e1", "e2", "e3", "e4"]
        assert not change_notifier.is_running
        assert change_notifier.pending == 0

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, notifier):
        """Publishing after stop() starts delivery again."""
        await notifier.connect()
        change_notifier = ChangeNotifier(notifier)
        await change_notifier.start()
        await change_notifier.stop()

        await change_notifier.publish("page:p1", "page.updated", {})
        await change_notifier.flush()

        assert change_notifier.is_running
        assert notifier.get_event_names() == ["page.updated"]
        await change_notifier.stop()

    @pytest.mark.asyncio
    async def test_archive_returns_before_slow_delivery(self, data_dir):
        """Core operations return without waiting on a slow transport."""
        transport = SlowNotifier(delay=0)
        workspace = Workspace(EntityStore(data_dir, wal_mode=False), transport)
        await workspace.open()
        root = await workspace.pages.create_page("user-1", "Root")
        for title in ("A", "B", "C"):
            await workspace.pages.create_page("user-1", title, parent_id=root.page_id)
        await workspace.notifier.flush()
        transport.clear()
        transport.delay = 0.2

        loop = asyncio.get_running_loop()
        started = loop.time()
        archived = await workspace.archive.archive_page(root.page_id)
        elapsed = loop.time() - started

        assert len(archived) == 4
        assert elapsed < 0.2
        await workspace.close()
        assert transport.get_event_names().count("page.archived") == 4
        assert transport.get_event_names(f"page:{root.page_id}") == ["page.archived"]


class TestChangeEvent:
    """Tests for ChangeEvent and channel keys."""

    def test_channel_keys(self):
        """Channel keys use entity-kind prefixes."""
        assert page_channel("p1") == "page:p1"
        assert database_channel("d1") == "database:d1"
        assert user_channel("u1") == "user:u1"

    def test_to_bytes(self):
        """Events serialize to JSON."""
        event = ChangeEvent("page:p1", "block.updated", {"blockId": "b1"}, timestamp_ms=42)

        assert json.loads(event.to_bytes()) == {
            "channel": "page:p1",
            "event": "block.updated",
            "payload": {"blockId": "b1"},
            "timestamp_ms": 42,
        }


class TestTransportFactory:
    """Tests for create_notifier_transport."""

    def test_memory_backend(self):
        """Memory backend builds an in-memory transport."""
        transport = create_notifier_transport(ServerConfig())

        assert isinstance(transport, InMemoryNotifier)

    def test_kafka_backend(self):
        """Kafka backend builds a Kafka transport without connecting."""
        transport = create_notifier_transport(ServerConfig(notifier_backend=NotifierBackend.KAFKA))

        assert isinstance(transport, KafkaNotifier)
        assert not transport.is_connected


class TestKafkaDelivery:
    """Tests for Kafka delivery reporting."""

    @pytest.mark.asyncio
    async def test_failed_delivery_logged(self, caplog):
        """Failed background deliveries are logged; successful ones are not."""
        loop = asyncio.get_running_loop()
        event = ChangeEvent("page:p1", "page.updated")
        failed = loop.create_future()
        failed.set_exception(RuntimeError("leader not available"))
        delivered = loop.create_future()
        delivered.set_result(None)

        _log_delivery_failure(event, failed)
        _log_delivery_failure(event, delivered)

        assert caplog.text.count("Kafka delivery failed") == 1
        assert "leader not available" in caplog.text
