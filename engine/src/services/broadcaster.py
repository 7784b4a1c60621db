"""
Per-topic fan-out of JSON messages to live websocket subscribers.

Delivery is best-effort: a failed send is logged and the subscriber dropped,
nothing is retained for subscribers that connect later. A late subscriber must
fetch current state through the query API.
"""

import logging
from typing import Dict, Protocol, Set, Union

from engine.src.models.events import ExecutionEvent, TestRunMessage

logger = logging.getLogger(__name__)

class Subscriber(Protocol):
    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...

Message = Union[ExecutionEvent, TestRunMessage]

class EventBroadcaster:
    def __init__(self):
        self._subscribers: Dict[str, Set[Subscriber]] = {}

    def subscribe(self, topic: str, subscriber: Subscriber):
        self._subscribers.setdefault(topic, set()).add(subscriber)
        logger.info(f"Subscriber joined {topic} ({len(self._subscribers[topic])} connected)")

    def unsubscribe(self, topic: str, subscriber: Subscriber):
        subscribers = self._subscribers.get(topic)
        if not subscribers:
            return
        subscribers.discard(subscriber)
        if not subscribers:
            del self._subscribers[topic]
        logger.info(f"Subscriber left {topic}")

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, message: Message) -> int:
        """Send a message to every subscriber of a topic. Returns deliveries."""
        subscribers = self._subscribers.get(topic)
        if not subscribers:
            return 0

        data = message.to_json()
        delivered = 0
        for subscriber in list(subscribers):
            try:
                await subscriber.send_text(data)
                delivered += 1
            except Exception as e:
                logger.warning(f"[{topic}] Error sending message, dropping subscriber: {e}")
                self.unsubscribe(topic, subscriber)
        return delivered

    async def close_topic(self, topic: str):
        """Close and forget every subscriber of a topic."""
        subscribers = self._subscribers.pop(topic, set())
        for subscriber in subscribers:
            try:
                await subscriber.close()
            except Exception as e:
                logger.debug(f"[{topic}] Error closing subscriber: {e}")
        if subscribers:
            logger.info(f"Closed {len(subscribers)} subscriber(s) on {topic}")
