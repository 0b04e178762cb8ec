"""
In-process fan-out of inbox events to connected UI clients.

publish() never blocks and never raises: a subscriber whose queue is full
misses the event, and the next inbox fetch brings it back in line.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from crm_inbox.config import settings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    MESSAGE_READ = "message_read"
    MESSAGES_READ = "messages_read"
    MESSAGES_DELETED = "messages_deleted"
    MESSAGE_NEW = "message_new"
    CONNECTION_ACK = "connection_ack"


class InboxEvent(BaseModel):
    event: EventType
    data: dict[str, Any]
    timestamp: Optional[datetime] = None

    def model_post_init(self, __context: Any) -> None:
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)


class Broadcaster:
    """Subscribers each get a bounded asyncio queue of InboxEvent."""

    def __init__(self, queue_size: Optional[int] = None) -> None:
        self._queue_size = queue_size or settings.SUBSCRIBER_QUEUE_SIZE
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        logger.debug(f"Subscriber added ({len(self._subscribers)} connected)")
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)
        logger.debug(f"Subscriber removed ({len(self._subscribers)} connected)")

    def publish(self, event: EventType, data: dict[str, Any]) -> InboxEvent:
        message = InboxEvent(event=event, data=data)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full, dropping {event.value} event")
        logger.info(
            f"Published {event.value}",
            extra={"event": event.value, "subscribers": len(self._subscribers)},
        )
        return message


_broadcaster: Optional[Broadcaster] = None


def get_broadcaster() -> Broadcaster:
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = Broadcaster()
    return _broadcaster
