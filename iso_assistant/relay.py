"""
In-process fan-out of channel events to a user's subscribers.

Provides:
- Subscription: Async iterator over the events of one user's channel
- StreamingRelay: publish / subscribe keyed by user id

Each subscriber has its own FIFO queue, so every subscriber sees events in
publish order. There is no backlog: a subscriber only receives events
published after subscribe() returned. A subscriber that falls more than
RELAY_SUBSCRIBER_QUEUE_SIZE events behind is dropped; its iterator drains
what it already has and then ends.
"""

import asyncio
from collections import defaultdict
from typing import Dict, Optional, Set

from iso_assistant.config import RELAY_SUBSCRIBER_QUEUE_SIZE
from iso_assistant.events import BaseChannelEvent
from iso_assistant.logging_config import get_logger

logger = get_logger(__name__)

_CLOSED = object()


class Subscription:
    """
    Events for one user, in publish order.

    Registered with the relay as soon as it is created. With stop_on_end the
    iterator finishes after the first `end` event, otherwise it stays open
    until closed or dropped.

    Example:
        async with relay.subscribe(user_id) as events:
            async for event in events:
                ...
    """

    def __init__(self, relay: "StreamingRelay", user_id: str, stop_on_end: bool, max_pending: int) -> None:
        self.relay = relay
        self.user_id = user_id
        self.stop_on_end = stop_on_end
        self.max_pending = max_pending
        self.dropped = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._finished = False

    def _offer(self, event: BaseChannelEvent) -> bool:
        """Queue an event. Returns False if the subscriber had to be dropped."""
        if self._closed:
            return False
        if self._queue.qsize() >= self.max_pending:
            self.dropped = True
            self.close()
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.relay._remove(self)
        self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BaseChannelEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        if self.stop_on_end and item.kind == "end":
            self._finished = True
            self.close()
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class StreamingRelay:
    """Per-user broadcast channel."""

    def __init__(self, queue_size: int = RELAY_SUBSCRIBER_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self, user_id: str, stop_on_end: bool = True, queue_size: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, user_id, stop_on_end, queue_size or self.queue_size)
        self._subscribers[user_id].add(subscription)
        logger.debug("relay_subscribed", user_id=user_id, subscribers=len(self._subscribers[user_id]))
        return subscription

    async def publish(self, user_id: str, event: BaseChannelEvent) -> int:
        """
        Deliver an event to every current subscriber of the user.

        Returns:
            Number of subscribers the event was queued for
        """
        delivered = 0
        for subscription in list(self._subscribers.get(user_id, ())):
            if subscription._offer(event):
                delivered += 1
            elif subscription.dropped:
                logger.warning(
                    "relay_subscriber_dropped",
                    user_id=user_id,
                    interaction_id=event.interaction_id,
                    max_pending=subscription.max_pending,
                )
        return delivered

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._subscribers.get(user_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscribers.get(subscription.user_id)
        if subs is None:
            return
        subs.discard(subscription)
        if not subs:
            del self._subscribers[subscription.user_id]
