"""Tests for the event bus and event types."""

from __future__ import annotations

import asyncio

from tandem.events.bus import Event, EventBus
from tandem.events.types import (
    TURN_COMPLETED,
    TURN_FAILED,
    TURN_STARTED,
    WORKING_CHANGED,
)


class TestEvent:
    def test_auto_timestamp(self):
        event = Event(event_type="test", chat_id="c1")
        assert event.timestamp != ""

    def test_explicit_timestamp(self):
        event = Event(event_type="test", chat_id="c1", timestamp="2025-01-01T00:00:00")
        assert event.timestamp == "2025-01-01T00:00:00"

    def test_default_data(self):
        event = Event(event_type="test", chat_id="c1")
        assert event.data == {}


class TestEventBus:
    def test_subscribe_and_emit_sync(self):
        bus = EventBus()
        received = []

        bus.subscribe(TURN_COMPLETED, received.append)
        bus.emit(Event(event_type=TURN_COMPLETED, chat_id="c1"))

        assert len(received) == 1
        assert received[0].chat_id == "c1"

    def test_subscribe_does_not_receive_other_types(self):
        bus = EventBus()
        received = []

        bus.subscribe(TURN_COMPLETED, received.append)
        bus.emit(Event(event_type=TURN_FAILED, chat_id="c1"))

        assert received == []

    def test_subscribe_all(self):
        bus = EventBus()
        received = []

        bus.subscribe_all(received.append)
        bus.emit(Event(event_type=TURN_STARTED, chat_id="c1"))
        bus.emit(Event(event_type=WORKING_CHANGED, chat_id="c1"))

        assert [e.event_type for e in received] == [TURN_STARTED, WORKING_CHANGED]

    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        received = []

        def bad(event):
            raise RuntimeError("handler broke")

        bus.subscribe(TURN_FAILED, bad)
        bus.subscribe(TURN_FAILED, received.append)
        bus.emit(Event(event_type=TURN_FAILED, chat_id="c1"))

        assert len(received) == 1

    def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            bus.emit(Event(event_type=TURN_STARTED, chat_id=f"c{i}"))

        history = bus.recent_events()
        assert [e.chat_id for e in history] == ["c2", "c3", "c4"]

    def test_recent_events_filtered(self):
        bus = EventBus()
        bus.emit(Event(event_type=TURN_STARTED, chat_id="c1"))
        bus.emit(Event(event_type=TURN_COMPLETED, chat_id="c1"))

        assert len(bus.recent_events(TURN_COMPLETED)) == 1

    async def test_async_handler_runs_and_drains(self):
        bus = EventBus()
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event.event_type)

        bus.subscribe(TURN_COMPLETED, handler)
        bus.emit(Event(event_type=TURN_COMPLETED, chat_id="c1"))
        await bus.drain(timeout=1.0)

        assert received == [TURN_COMPLETED]

    def test_async_handler_without_loop_is_skipped(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe(TURN_COMPLETED, handler)
        bus.emit(Event(event_type=TURN_COMPLETED, chat_id="c1"))

        assert received == []
        assert len(bus.recent_events()) == 1
