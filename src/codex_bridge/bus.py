"""Notification Bus - fan-out of app-server notifications.

Every notification line the app-server emits is published here and
delivered to each live subscriber (SSE streams, WebSocket sessions).
No history is kept: a subscriber only sees what is published after it
subscribes.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator, Callable

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256

# Sentinel pushed into a queue to end its iterator
_CLOSED = None


class Subscription:
    """One listener's bounded view of the bus.

    Usage:
        subscription, unsubscribe = bus.subscribe()
        try:
            async for raw in subscription:
                ...
        finally:
            unsubscribe()
    """

    def __init__(self, subscription_id: int, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.id = subscription_id
        # One slot reserved for the close sentinel
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=queue_size + 1)
        self._capacity = queue_size
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of queued, undelivered notifications."""
        return self._queue.qsize()

    def offer(self, raw: bytes) -> bool:
        """Queue a notification without blocking.

        Returns False when the subscription is closed or full (the message
        is dropped for this subscriber only).
        """
        if self._closed:
            return False
        if self._queue.qsize() >= self._capacity:
            self.dropped += 1
            return False
        self._queue.put_nowait(raw)
        return True

    def close(self) -> None:
        """Discard queued messages and wake the reader with the closed signal."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> bytes | None:
        """Next notification, or None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        while True:
            raw = await self.get()
            if raw is None:
                return
            yield raw


class NotificationBus:
    """In-memory pub/sub with bounded per-subscriber queues.

    Publishing never awaits: it walks a snapshot of the subscriber table and
    offers the message to each queue. A full queue drops the newest message
    for that subscriber and logs a warning, so a stalled consumer cannot
    stall the app-server reader or other subscribers.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> tuple[Subscription, Callable[[], None]]:
        """Register a new subscriber.

        Returns:
            The subscription and a function that removes it. The function is
            safe to call more than once.
        """
        subscription = Subscription(next(self._ids), self.queue_size)
        if self._closed:
            subscription.close()
            return subscription, lambda: None

        self._subscriptions[subscription.id] = subscription
        logger.debug(f"subscriber={subscription.id} added (total={self.subscriber_count})")

        def unsubscribe() -> None:
            existing = self._subscriptions.pop(subscription.id, None)
            if existing is not None:
                existing.close()
                logger.debug(
                    f"subscriber={subscription.id} removed (total={self.subscriber_count})"
                )

        return subscription, unsubscribe

    def publish(self, raw: bytes) -> int:
        """Deliver ``raw`` to every current subscriber.

        Returns:
            Number of subscribers that accepted the message.
        """
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.offer(raw):
                delivered += 1
            elif not subscription.closed:
                logger.warning(
                    f"dropping notification for subscriber={subscription.id} (listener slow)"
                )
        return delivered

    def close(self) -> None:
        """Close every subscription; later subscribers are closed immediately."""
        if self._closed:
            return
        self._closed = True
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()
        if subscriptions:
            logger.info(f"closed {len(subscriptions)} notification subscriber(s)")
