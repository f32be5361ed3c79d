"""Tests for the async EventBus."""

import pytest

from chat_pipeline.events.bus import EventBus
from chat_pipeline.types import Notification, NotificationType


@pytest.fixture
def bus():
    return EventBus()


def _note(kind=NotificationType.CHAT_STREAM, **data) -> Notification:
    return Notification(type=kind, data=data)


class TestSubscribeAndPublish:
    @pytest.mark.asyncio
    async def test_async_handler(self, bus: EventBus):
        received = []

        async def handler(note: Notification):
            received.append(note)

        bus.subscribe("chat", handler)
        note = _note(answer="hi")
        await bus.publish("chat", note)

        assert len(received) == 1
        assert received[0] is note

    @pytest.mark.asyncio
    async def test_sync_handler(self, bus: EventBus):
        received = []
        bus.subscribe("chat", received.append)
        await bus.publish("chat", _note())

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_no_cross_delivery(self, bus: EventBus):
        received = []
        bus.subscribe("chat", received.append)
        await bus.publish("training", _note(NotificationType.TRAINING_STATUS))

        assert received == []

    @pytest.mark.asyncio
    async def test_multiple_handlers(self, bus: EventBus):
        counts = {"a": 0, "b": 0}

        async def handler_a(note: Notification):
            counts["a"] += 1

        def handler_b(note: Notification):
            counts["b"] += 1

        bus.subscribe("chat", handler_a)
        bus.subscribe("chat", handler_b)
        await bus.publish("chat", _note())

        assert counts == {"a": 1, "b": 1}
        assert bus.count("chat") == 2


class TestUnsubscribe:
    @pytest.mark.asyncio
    async def test_handle_removes_handler(self, bus: EventBus):
        received = []
        unsubscribe = bus.subscribe("chat", received.append)
        await bus.publish("chat", _note())
        assert len(received) == 1

        unsubscribe()
        await bus.publish("chat", _note())
        assert len(received) == 1  # No new notifications
        assert bus.count("chat") == 0

    def test_unsubscribe_twice(self, bus: EventBus):
        unsubscribe = bus.subscribe("chat", print)
        unsubscribe()
        # Should not raise
        unsubscribe()
        bus.unsubscribe("missing", print)


class TestClear:
    @pytest.mark.asyncio
    async def test_clear_removes_all_handlers(self, bus: EventBus):
        received = []
        bus.subscribe("chat", received.append)
        bus.subscribe("session", received.append)

        bus.clear()
        await bus.publish("chat", _note())

        assert received == []
        assert bus.count("chat") == 0
        assert bus.count("session") == 0

    def test_no_history_kept(self, bus: EventBus):
        assert not hasattr(bus, "history")


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_handler_exception_does_not_propagate(self, bus: EventBus, caplog):
        async def bad_handler(note: Notification):
            raise ValueError("boom")

        received = []
        bus.subscribe("chat", bad_handler)
        bus.subscribe("chat", received.append)

        # Should not raise
        await bus.publish("chat", _note())
        assert len(received) == 1
        assert "bad_handler" in caplog.text
