"""Tests for the repair loop event manager."""

from __future__ import annotations

import asyncio

import pytest

from repairloop.events import ALL_CHANNEL, Event, EventManager, EventType


def make_event(task_id: str = "task_1", mission_id: str | None = "mission_1") -> Event:
    return Event(
        event_type=EventType.DIFF_APPLIED,
        task_id=task_id,
        mission_id=mission_id,
        data={"diff_id": "diff_1"},
    )


class TestEvent:
    def test_to_dict(self):
        event = make_event()

        data = event.to_dict()

        assert data["type"] == "diff_applied"
        assert data["task_id"] == "task_1"
        assert data["mission_id"] == "mission_1"
        assert data["mode"] == "MISSION"
        assert data["stage"] == "repair"
        assert data["payload"] == {"diff_id": "diff_1"}
        assert data["event_id"]

    def test_event_ids_are_unique(self):
        assert make_event().event_id != make_event().event_id


class TestEventManager:
    @pytest.mark.asyncio
    async def test_fan_out(self):
        manager = EventManager()
        task_queue = await manager.subscribe("task:task_1")
        mission_queue = await manager.subscribe("mission:mission_1")
        all_queue = await manager.subscribe(ALL_CHANNEL)
        other_queue = await manager.subscribe("task:task_2")

        event = make_event()
        await manager.publish(event)

        assert event.channel == "task:task_1"
        assert task_queue.get_nowait() is event
        assert mission_queue.get_nowait() is event
        assert all_queue.get_nowait() is event
        assert other_queue.empty()

    @pytest.mark.asyncio
    async def test_no_mission_channel_without_mission(self):
        manager = EventManager()
        mission_queue = await manager.subscribe("mission:None")

        await manager.publish(make_event(mission_id=None))

        assert mission_queue.empty()

    @pytest.mark.asyncio
    async def test_full_queue_drops_events(self):
        manager = EventManager(maxsize=1)
        queue = await manager.subscribe(ALL_CHANNEL)

        first = make_event()
        await manager.publish(first)
        await manager.publish(make_event())

        assert queue.qsize() == 1
        assert queue.get_nowait() is first

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        manager = EventManager()
        queue = await manager.subscribe("task:task_1")

        await manager.unsubscribe("task:task_1", queue)
        await manager.publish(make_event())

        assert queue.empty()

    @pytest.mark.asyncio
    async def test_subscriber_receives_while_waiting(self):
        manager = EventManager()
        queue = await manager.subscribe("task:task_1")

        waiter = asyncio.create_task(queue.get())
        await manager.publish(make_event())

        received = await asyncio.wait_for(waiter, timeout=1)
        assert received.event_type == EventType.DIFF_APPLIED
