"""Live event fan-out to connected viewers over Server-Sent Events.

Delivery is at-most-once and unbuffered across connections: a viewer only sees
events broadcast while it is subscribed and loads current state from the read
endpoints. Any channel that fails on push is dropped on the spot.
"""

import asyncio
import json
import threading
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from ledgerlink.common.logging import logger
from ledgerlink.common.metrics import broadcast_deliveries_total, live_connections


EVENT_TYPES = (
    "connected",
    "heartbeat",
    "new-message",
    "message-status-update",
    "new-conversation",
    "conversation-update",
)


class ChannelClosedError(Exception):
    """Raised when pushing to a channel whose viewer has gone away."""


def format_sse_event(event_type: str, data: dict[str, Any]) -> str:
    """Frame one event as an SSE `data:` line."""

    return f"data: {json.dumps({'type': event_type, 'data': data}, default=str)}\n\n"


class Subscription:
    """One viewer's push channel, backed by a bounded queue."""

    def __init__(self, maxsize: int) -> None:
        self.id = str(uuid4())
        self.queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def push(self, frame: str) -> None:
        if self.closed:
            raise ChannelClosedError(self.id)
        # A viewer too slow to drain its queue is treated as disconnected.
        self.queue.put_nowait(frame)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def pending(self) -> list[str]:
        """Frames queued and not yet streamed, without waiting."""

        frames = []
        while not self.queue.empty():
            frame = self.queue.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    async def frames(self) -> AsyncIterator[str]:
        while True:
            # A channel closed while full never got its end marker.
            if self.closed and self.queue.empty():
                return
            frame = await self.queue.get()
            if frame is None:
                return
            yield frame


class EventBroadcaster:
    """Registry of live channels; constructed per app, never module-global."""

    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._subscribers: set[Subscription] = set()
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Register a new channel and greet it with a `connected` event."""

        subscription = Subscription(self.queue_size)
        subscription.push(format_sse_event("connected", {"message": "Connected to live events"}))
        with self._lock:
            self._subscribers.add(subscription)
            live_connections.set(len(self._subscribers))
        logger.info("live viewer connected subscriber_id=%s", subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Deregister and close a channel; calling it twice is harmless."""

        with self._lock:
            removed = subscription in self._subscribers
            self._subscribers.discard(subscription)
            live_connections.set(len(self._subscribers))
        subscription.close()
        if removed:
            logger.info("live viewer disconnected subscriber_id=%s", subscription.id)

    def broadcast(self, event_type: str, data: dict[str, Any]) -> int:
        """Push one event to every channel; returns how many received it."""

        frame = format_sse_event(event_type, data)
        with self._lock:
            targets = list(self._subscribers)

        delivered = 0
        for subscription in targets:
            try:
                subscription.push(frame)
                delivered += 1
            except (ChannelClosedError, asyncio.QueueFull) as exc:
                logger.warning(
                    "dropping live viewer subscriber_id=%s event_type=%s error=%s",
                    subscription.id,
                    event_type,
                    type(exc).__name__,
                )
                broadcast_deliveries_total.labels(event_type=event_type, result="dropped").inc()
                self.unsubscribe(subscription)
        if delivered:
            broadcast_deliveries_total.labels(event_type=event_type, result="delivered").inc(delivered)
        return delivered

    def heartbeat(self) -> int:
        return self.broadcast("heartbeat", {"timestamp": datetime.now(timezone.utc).isoformat()})

    async def run_heartbeats(self, interval_seconds: float = 30.0) -> None:
        """Keep idle transports alive; dead channels are pruned like on any broadcast."""

        while True:
            await asyncio.sleep(interval_seconds)
            self.heartbeat()

    def close_all(self) -> None:
        with self._lock:
            targets = list(self._subscribers)
        for subscription in targets:
            self.unsubscribe(subscription)
