"""Tests for the event bus and event types."""

from __future__ import annotations

import asyncio

import pytest

from setupauth.events.bus import Event, EventBus
from setupauth.events.types import (
    RUN_COMPLETED,
    RUN_FAILED,
    STEP_COMPLETED,
    STEP_SKIPPED,
    STEP_STARTED,
)


class TestEvent:
    def test_auto_timestamp(self):
        event = Event(event_type="test", run_id="r1")
        assert event.timestamp != ""

    def test_explicit_timestamp(self):
        event = Event(event_type="test", run_id="r1", timestamp="2025-01-01T00:00:00")
        assert event.timestamp == "2025-01-01T00:00:00"

    def test_default_data(self):
        event = Event(event_type="test", run_id="r1")
        assert event.data == {}


class TestEventBus:
    def test_subscribe_and_emit_sync(self):
        bus = EventBus()
        received = []

        bus.subscribe(RUN_COMPLETED, received.append)
        bus.emit(Event(event_type=RUN_COMPLETED, run_id="r1"))

        assert len(received) == 1
        assert received[0].run_id == "r1"

    def test_subscribe_does_not_receive_other_types(self):
        bus = EventBus()
        received = []

        bus.subscribe(RUN_COMPLETED, received.append)
        bus.emit(Event(event_type=RUN_FAILED, run_id="r1"))

        assert received == []

    def test_subscribe_all_receives_everything(self):
        bus = EventBus()
        received = []

        bus.subscribe_all(received.append)
        bus.emit(Event(event_type=STEP_STARTED, run_id="r1"))
        bus.emit(Event(event_type=STEP_SKIPPED, run_id="r1"))

        assert [e.event_type for e in received] == [STEP_STARTED, STEP_SKIPPED]

    def test_global_handlers_run_before_typed_ones(self):
        bus = EventBus()
        order = []

        bus.subscribe(STEP_STARTED, lambda e: order.append("typed"))
        bus.subscribe_all(lambda e: order.append("global"))
        bus.emit(Event(event_type=STEP_STARTED, run_id="r1"))

        assert order == ["global", "typed"]

    def test_handler_error_does_not_break_emit(self):
        bus = EventBus()
        received = []

        def bad_handler(event: Event):
            raise RuntimeError("boom")

        bus.subscribe("test", bad_handler)
        bus.subscribe("test", received.append)
        bus.emit(Event(event_type="test", run_id="r1"))

        assert len(received) == 1

    def test_async_handler_without_loop_is_skipped(self):
        bus = EventBus()
        received = []

        async def handler(event: Event):
            received.append(event)

        bus.subscribe("test", handler)
        bus.emit(Event(event_type="test", run_id="r1"))

        assert received == []

    @pytest.mark.asyncio
    async def test_async_handler_runs_and_drains(self):
        bus = EventBus()
        received = []

        async def handler(event: Event):
            await asyncio.sleep(0)
            received.append(event)

        bus.subscribe("test", handler)
        bus.emit(Event(event_type="test", run_id="r1"))
        await bus.drain(timeout=1.0)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_failing_async_handler_is_contained(self):
        bus = EventBus()

        async def handler(event: Event):
            raise RuntimeError("boom")

        bus.subscribe("test", handler)
        bus.emit(Event(event_type="test", run_id="r1"))
        await bus.drain(timeout=1.0)

    @pytest.mark.asyncio
    async def test_drain_gives_up_after_timeout(self, caplog):
        bus = EventBus()
        release = asyncio.Event()

        async def handler(event: Event):
            await release.wait()

        bus.subscribe("test", handler)
        bus.emit(Event(event_type="test", run_id="r1"))
        await bus.drain(timeout=0.01)

        assert "still running" in caplog.text
        release.set()
        await bus.drain(timeout=1.0)
