"""
DialBridge - Status Broadcaster

Fan-out channel for dashboard observers.

Every ledger mutation, transcript line, notification and system log entry is
published here as a plain JSON-serializable dict. Each observer gets its own
bounded queue; publishing never awaits, so a slow or vanished observer can
never block a ledger update. When an observer's queue is full the event is
dropped for that observer only.

Event shapes:
    {"type": "status_update", "id", "status", "message", "endedBy", "duration", "agent"}
    {"type": "transcript", "id", "sender", "text"}
    {"type": "notification", "level", "title", "message"}
    {"type": "log", "log": {...}}
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


class Subscription:
    """A single observer's view of the broadcast channel."""

    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()

    def get_nowait(self) -> Dict[str, Any]:
        return self.queue.get_nowait()

    def drain(self) -> list:
        """Return every queued event without waiting."""
        items = []
        while not self.queue.empty():
            items.append(self.queue.get_nowait())
        return items


class StatusBroadcaster:
    """
    At-most-once, fire-and-forget fan-out to any number of observers.

    Usage:
        broadcaster = StatusBroadcaster(queue_size=100)
        sub = broadcaster.subscribe()
        broadcaster.publish({"type": "status_update", ...})
        event = await sub.get()
        broadcaster.unsubscribe(sub)
    """

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._subscribers: Set[Subscription] = set()
        self._published = 0

    def subscribe(self) -> Subscription:
        sub = Subscription(self._queue_size)
        self._subscribers.add(sub)
        logger.debug("Observer subscribed: total=%d", len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)
        logger.debug("Observer unsubscribed: total=%d", len(self._subscribers))

    def publish(self, event: Dict[str, Any]) -> None:
        """Deliver an event to every observer without blocking."""
        self._published += 1
        for sub in list(self._subscribers):
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                # Not logged: the system log handler publishes through here
                sub.dropped += 1

    # --- Convenience publishers ---

    def transcript(self, call_id: str, sender: str, text: str) -> None:
        self.publish({"type": "transcript", "id": call_id, "sender": sender, "text": text})

    def notify(
        self,
        level: str,
        title: str,
        message: str,
        call_id: Optional[str] = None,
    ) -> None:
        self.publish({
            "type": "notification",
            "level": level,
            "title": title,
            "message": message,
            "id": call_id,
        })

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def get_stats(self) -> dict:
        return {
            "subscribers": len(self._subscribers),
            "published": self._published,
            "dropped": sum(s.dropped for s in self._subscribers),
        }
