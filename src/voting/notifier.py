"""
Change Notifier.

Topic based publish/subscribe for VotingResult changes; the topic is the
(organization, proposal url) pair. Delivery is best effort and there is no
replay: a subscriber that connects after a publish only sees later events
and re-fetches the current result itself.

Subscriptions are consumed on an asyncio event loop, while publishes may
come from worker threads (sync request handlers), so events are handed to
the subscriber's loop with ``call_soon_threadsafe``.
"""

import asyncio
import threading
from collections import defaultdict
from typing import Dict, Optional, Set, Tuple

from src.data_models.schemas import VotingResult
from src.utils.logger import logger

Topic = Tuple[str, str]


class Subscription:
    """One live listener on a topic; iterate it to receive VotingResults."""

    def __init__(self, notifier: "ChangeNotifier", topic: Topic, loop: asyncio.AbstractEventLoop, queue_size: int):
        self.notifier = notifier
        self.topic = topic
        self.loop = loop
        self.queue: "asyncio.Queue[VotingResult]" = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0
        self.closed = False

    def offer(self, result: VotingResult) -> None:
        """Enqueue on the subscriber's loop; drops the oldest event when full."""
        if self.closed:
            return
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(result)

    async def get(self, timeout: Optional[float] = None) -> Optional[VotingResult]:
        """Next event, or None if ``timeout`` elapses first."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.notifier.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> VotingResult:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ChangeNotifier:
    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._subscribers: Dict[Topic, Set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, organization_id: str, proposal_url: str) -> Subscription:
        """Register a listener; must be called from the loop that will consume it."""
        loop = asyncio.get_running_loop()
        subscription = Subscription(self, (organization_id, proposal_url), loop, self._queue_size)
        with self._lock:
            self._subscribers[subscription.topic].add(subscription)
        logger.info("ChangeNotifier: subscribed to %s (org=%s)", proposal_url, organization_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._subscribers.get(subscription.topic)
            if listeners is None:
                return
            listeners.discard(subscription)
            if not listeners:
                del self._subscribers[subscription.topic]

    def subscriber_count(self, organization_id: str, proposal_url: str) -> int:
        with self._lock:
            return len(self._subscribers.get((organization_id, proposal_url), ()))

    def publish(self, organization_id: str, proposal_url: str, result: VotingResult) -> int:
        """Fire-and-forget broadcast; returns how many subscribers it was handed to."""
        topic = (organization_id, proposal_url)
        with self._lock:
            listeners = list(self._subscribers.get(topic, ()))

        delivered = 0
        for subscription in listeners:
            try:
                subscription.loop.call_soon_threadsafe(subscription.offer, result)
                delivered += 1
            except RuntimeError:
                # Consumer's event loop is closed; the subscriber is gone
                logger.info("ChangeNotifier: dropping subscriber on closed loop (topic=%s)", topic)
                subscription.close()

        logger.info(
            "ChangeNotifier: published %s (org=%s) to %d subscriber(s)",
            proposal_url, organization_id, delivered,
        )
        return delivered
