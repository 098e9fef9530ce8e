"""
In-process broadcast of sync and record-change events.

The sync engine and the message store only depend on the Notifier
protocol; the Broadcaster below fans events out to asyncio queues for
whoever subscribed (e.g. a streaming endpoint). Delivery is
fire-and-forget: slow subscribers lose events rather than block senders.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Protocol, Set

logger = logging.getLogger(__name__)


# Event names
FETCHING_EMAILS = "fetching_emails"
FETCH_COMPLETE = "fetch_complete"
MESSAGE_CREATED = "message_created"
MESSAGE_UPDATED = "message_updated"


def account_topic(account_id: int) -> str:
    return f"mail_account:{account_id}"


def user_messages_topic(user_id: str) -> str:
    return f"user_messages:{user_id}"


class Notifier(Protocol):
    def notify(self, topic: str, event: Dict[str, Any]) -> None:
        ...


class Broadcaster:
    """Topic-based fan-out to per-subscriber asyncio queues."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers[topic].add(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        self._subscribers[topic].discard(queue)
        if not self._subscribers[topic]:
            del self._subscribers[topic]

    def notify(self, topic: str, event: Dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(topic, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event.get('event')} for slow subscriber on {topic}")


# Process-wide broadcaster
broadcaster = Broadcaster()
