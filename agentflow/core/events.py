"""In-process publish/subscribe boundary for real-time notifications."""
from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict

from .clock import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    AGENT_UPDATED = "agent-updated"
    TASK_UPDATED = "task-updated"
    MESSAGE_RECEIVED = "message-received"
    EXECUTION_UPDATED = "execution-updated"
    SYSTEM_STATUS = "system-status"


@dataclass(slots=True, frozen=True)
class Event:
    """Named notification emitted by the core."""

    type: EventType
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)


class NotificationBus:
    """Async hub fanning events out to every current subscriber.

    Publishing never waits on subscribers and does not assume any exist.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[int, asyncio.Queue[Event]] = {}
        self._ids = itertools.count(1)
        self._published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def published_count(self) -> int:
        return self._published

    def publish(self, event: Event) -> None:
        self._published += 1
        for queue in list(self._subscribers.values()):
            queue.put_nowait(event)
        logger.debug("Published %s to %d subscribers", event.type.value, len(self._subscribers))

    def emit(self, event_type: EventType, **payload: Any) -> None:
        self.publish(Event(type=event_type, payload=payload))

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue[Event]]:
        """Context manager yielding a queue that receives every later event."""
        subscriber_id = next(self._ids)
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._subscribers[subscriber_id] = queue
        try:
            yield queue
        finally:
            self._subscribers.pop(subscriber_id, None)
