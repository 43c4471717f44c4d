"""
In-process topic publish/subscribe for lifecycle and sync events.

Publishing never awaits: each subscriber owns a queue and events
are appended synchronously, so the order in which one session's consumer
or sync task publishes is the order every subscriber reads.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from chatsync.utils import utc_now_iso

logger = logging.getLogger(__name__)

PAIRING_READY = "pairing-ready"
READY = "ready"
SYNC_STATUS = "sync-status"
SYNC_PROGRESS = "sync-progress"
SYNC_COMPLETE = "sync-complete"
DISCONNECTED = "disconnected"

TOPICS = frozenset({PAIRING_READY, READY, SYNC_STATUS, SYNC_PROGRESS, SYNC_COMPLETE, DISCONNECTED})


@dataclass(slots=True)
class Event:
    topic: str
    session_name: str
    payload: dict[str, Any]
    ts: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "session_name": self.session_name,
            "payload": self.payload,
            "ts": self.ts,
        }


class Subscription:
    """A subscriber's view of the stream; iterate or call get()."""

    def __init__(self, notifier: EventNotifier, maxsize: int) -> None:
        self._notifier = notifier
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def get(self) -> Event:
        return await self.queue.get()

    def close(self) -> None:
        self._notifier.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        return await self.queue.get()


class EventNotifier:
    def __init__(self, queue_size: int = 0) -> None:
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self._queue_size)
        self._subscribers.append(sub)
        logger.debug(f"Subscriber added ({len(self._subscribers)} total)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)
            logger.debug(f"Subscriber removed ({len(self._subscribers)} total)")

    def publish(self, topic: str, session_name: str, payload: Optional[dict[str, Any]] = None) -> Event:
        if topic not in TOPICS:
            raise ValueError(f"unknown topic: {topic}")
        event = Event(topic=topic, session_name=session_name, payload=payload or {})
        for sub in list(self._subscribers):
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                # Only reachable with queue_size > 0; publishers never block
                sub.dropped += 1
                logger.warning(f"Subscriber queue full, dropped {topic} for {session_name}")
        logger.debug(f"Published {topic} for {session_name} to {len(self._subscribers)} subscribers")
        return event
