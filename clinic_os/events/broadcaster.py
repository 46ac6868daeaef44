"""In-process realtime fan-out to connected clients."""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Protocol

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global"


def user_channel(user_id: Any) -> str:
    return f"user_{user_id}"


class Broadcaster(Protocol):
    async def emit(self, channel: str, event_name: str, payload: dict[str, Any]) -> None: ...


class InMemoryBroadcaster:
    """Per-channel subscriber queues.

    A subscriber receives messages for the channels it registered on; the
    WebSocket route registers each connection on its user channel and the
    global channel.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, *channels: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        for channel in channels:
            self._subscribers[channel].add(queue)
        logger.debug("Subscriber registered on %s", ", ".join(channels))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        for channel in list(self._subscribers):
            self._subscribers[channel].discard(queue)
            if not self._subscribers[channel]:
                del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def emit(self, channel: str, event_name: str, payload: dict[str, Any]) -> None:
        message = {"event": event_name, "channel": channel, "data": payload}
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Dropping %s for slow subscriber on %s", event_name, channel)
