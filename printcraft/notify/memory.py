"""
In-process notifier backed by asyncio queues.

Suitable when the web server and the workers share one process.
"""

import asyncio
from typing import Dict, Set, Optional

from printcraft.notify.base import Notifier, Subscription, JobEvent
from printcraft.utils.logging import notify_logger as logger


class MemorySubscription(Subscription):

    def __init__(self, notifier: "InMemoryNotifier", channel: str, max_pending: int):
        super().__init__(channel)
        self._notifier = notifier
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)

    def offer(self, event: JobEvent):
        if self.queue.full():
            # Slow consumer: drop the oldest event, the store has the truth
            self.queue.get_nowait()
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[JobEvent]:
        if self.closed and self.queue.empty():
            return None
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self):
        if not self.closed:
            self.closed = True
            self._notifier._remove(self)
            # Wake a reader blocked in get()
            if self.queue.full():
                self.queue.get_nowait()
            self.queue.put_nowait(None)


class InMemoryNotifier(Notifier):

    def __init__(self, max_pending: int = 100):
        self.max_pending = max_pending
        self._subscribers: Dict[str, Set[MemorySubscription]] = {}

    async def publish(self, channel: str, event: JobEvent):
        for subscription in list(self._subscribers.get(channel, ())):
            subscription.offer(event)

    async def subscribe(self, channel: str) -> Subscription:
        subscription = MemorySubscription(self, channel, self.max_pending)
        self._subscribers.setdefault(channel, set()).add(subscription)
        logger.debug("Subscribed", channel=channel)
        return subscription

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def _remove(self, subscription: MemorySubscription):
        subscribers = self._subscribers.get(subscription.channel)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.channel]
