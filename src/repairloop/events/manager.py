"""EventManager - in-memory pub/sub for repair loop events."""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict

from .models import Event

ALL_CHANNEL = "*"


class EventManager:
    """In-memory pub/sub keyed by channel.

    `publish` fans an event out to `task:{task_id}`, to `mission:{mission_id}`
    when the event has one, and to the `*` channel. Slow subscribers lose
    events instead of blocking the publisher.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self._maxsize = maxsize
        self._channels: dict[str, set[asyncio.Queue]] = defaultdict(set)

    async def subscribe(self, channel: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._channels[channel].add(queue)
        return queue

    async def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        self._channels[channel].discard(queue)
        if not self._channels[channel]:
            del self._channels[channel]

    async def publish_to_channel(self, channel: str, event: Event) -> None:
        for queue in list(self._channels.get(channel, [])):
            with contextlib.suppress(asyncio.QueueFull):
                queue.put_nowait(event)

    async def publish(self, event: Event) -> None:
        event.channel = f"task:{event.task_id}"
        await self.publish_to_channel(event.channel, event)
        if event.mission_id:
            await self.publish_to_channel(f"mission:{event.mission_id}", event)
        await self.publish_to_channel(ALL_CHANNEL, event)
