"""
In-process change feed.

Every insert and update made through the database helpers is published here as a
ChangeEvent. WebSocket handlers subscribe to the tables they care about and read
events from a bounded queue. Delivery is best effort: a slow subscriber whose
queue is full loses events.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"


@dataclass
class ChangeEvent:
    table: str
    event: str
    new: dict
    old: Optional[dict] = None


@dataclass
class Topic:
    table: str
    events: Tuple[str, ...] = (INSERT, UPDATE)
    match: Dict[str, object] = field(default_factory=dict)

    def accepts(self, change: ChangeEvent) -> bool:
        if change.table != self.table or change.event not in self.events:
            return False
        return all(change.new.get(k) == v for k, v in self.match.items())


class Subscription:
    def __init__(self, feed: "ChangeFeed", topics: Iterable[Topic], maxsize: int = 100):
        self.feed = feed
        self.topics = list(topics)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def wants(self, change: ChangeEvent) -> bool:
        return any(t.accepts(change) for t in self.topics)

    def deliver(self, change: ChangeEvent):
        try:
            self.queue.put_nowait(change)
        except asyncio.QueueFull:
            logger.warning(f"Dropping {change.event} on {change.table}: subscriber queue full")

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    def close(self):
        if not self.closed:
            self.closed = True
            self.feed.unsubscribe(self)


class ChangeFeed:
    def __init__(self):
        self._subscriptions: List[Subscription] = []

    def subscribe(self, *topics: Topic, maxsize: int = 100) -> Subscription:
        sub = Subscription(self, topics, maxsize=maxsize)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def publish(self, change: ChangeEvent) -> int:
        delivered = 0
        for sub in list(self._subscriptions):
            if sub.wants(change):
                sub.deliver(change)
                delivered += 1
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


feed = ChangeFeed()
