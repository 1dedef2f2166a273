"""Channel transport: in-process publish/subscribe for realtime updates.

Topics are plain strings identifying a resource (see ``topics``). Each
subscriber gets its own queue and consumer task, so a slow handler never holds
up the publisher or other subscribers. Events reach a subscriber in publish
order; a failing handler is retried with exponential backoff, which makes
delivery at-least-once and means handlers must tolerate duplicates.
"""
import asyncio
import inspect
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import backoff
from pydantic import BaseModel, Field

from .topics import (
    conversation_topic,
    conversations_topic,
    notifications_topic,
    transactions_topic,
    parse_topic,
    TopicError
)

logger = logging.getLogger(__name__)

class Event(BaseModel):
    """A change event delivered to subscribers of a topic."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    topic: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    sequence: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

Handler = Callable[[Event], Union[None, Awaitable[None]]]

class Subscription:
    """Handle returned by ``ChannelHub.subscribe``."""

    def __init__(self, hub: 'ChannelHub', topic: str, handler: Handler) -> None:
        self.id = str(uuid.uuid4())
        self.topic = topic
        self.handler = handler
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=hub.max_queue_size)
        self.task: Optional[asyncio.Task] = None
        self._hub = hub

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    async def _deliver(self, event: Event) -> None:
        result = self.handler(event)
        if inspect.isawaitable(result):
            await result

    async def run(self) -> None:
        deliver = backoff.on_exception(
            backoff.expo,
            Exception,
            max_tries=self._hub.max_attempts,
            factor=self._hub.retry_factor,
            max_value=self._hub.retry_max_delay,
            logger=logger
        )(self._deliver)

        while True:
            event = await self.queue.get()
            try:
                await deliver(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Dropping event {event.id} on {self.topic} for subscription "
                    f"{self.id} after {self._hub.max_attempts} attempts: {e}"
                )
            finally:
                self.queue.task_done()

    async def unsubscribe(self) -> None:
        await self._hub.unsubscribe(self)

class ChannelHub:
    """Topic registry and dispatcher."""

    def __init__(
        self,
        max_attempts: int = 5,
        retry_factor: float = 0.05,
        retry_max_delay: float = 2.0,
        max_queue_size: int = 1000
    ) -> None:
        self.max_attempts = max_attempts
        self.max_queue_size = max_queue_size
        self.retry_factor = retry_factor
        self.retry_max_delay = retry_max_delay
        self._subscriptions: Dict[str, Dict[str, Subscription]] = {}
        self._sequences: Dict[str, int] = {}

    async def subscribe(self, topic: str, handler: Handler) -> Subscription:
        """Register a handler for every event published to ``topic`` from now on."""
        subscription = Subscription(self, topic, handler)
        subscription.task = asyncio.create_task(subscription.run())
        self._subscriptions.setdefault(topic, {})[subscription.id] = subscription
        logger.debug(f"Subscription {subscription.id} attached to {topic}")
        return subscription

    def _detach(self, subscription: Subscription) -> bool:
        subscribers = self._subscriptions.get(subscription.topic, {})
        if subscribers.pop(subscription.id, None) is None:
            return False
        if not subscribers:
            del self._subscriptions[subscription.topic]
        if subscription.task is not None:
            subscription.task.cancel()
        return True

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscription. Pending events for it are discarded."""
        if not self._detach(subscription):
            return

        if subscription.task is not None:
            try:
                await subscription.task
            except asyncio.CancelledError:
                pass
        logger.debug(f"Subscription {subscription.id} detached from {subscription.topic}")

    def publish(self, topic: str, type: str, data: Optional[Dict[str, Any]] = None) -> Event:
        """Publish an event to every current subscriber of ``topic``.

        Never yields to the event loop: the sequence number is assigned and the
        event enqueued for every subscriber in one step, so events published
        under a resource lock are delivered in commit order.

        A subscriber whose queue is full has fallen too far behind; it is
        dropped so the publisher never blocks on it.
        """
        sequence = self._sequences.get(topic, 0) + 1
        self._sequences[topic] = sequence
        event = Event(topic=topic, type=type, data=data or {}, sequence=sequence)

        for subscription in list(self._subscriptions.get(topic, {}).values()):
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropping subscription {subscription.id} on {topic}: "
                    f"{subscription.queue.qsize()} events undelivered"
                )
                self._detach(subscription)
        return event

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, {}))

    def subscriptions(self) -> List[Subscription]:
        return [s for subs in self._subscriptions.values() for s in subs.values()]

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        for subscription in self.subscriptions():
            await subscription.queue.join()

    async def close(self) -> None:
        for subscription in self.subscriptions():
            await self.unsubscribe(subscription)
        self._sequences.clear()

# Global instance
hub = ChannelHub()

__all__ = [
    'ChannelHub',
    'Subscription',
    'Event',
    'Handler',
    'hub',
    'conversation_topic',
    'conversations_topic',
    'notifications_topic',
    'transactions_topic',
    'parse_topic',
    'TopicError'
]
