"""Update broadcaster: in-process fan-out of execution events per business.

One UpdateBroker is owned by the process (created in the FastAPI lifespan,
or per Celery task) and injected into the dispatcher and the SSE endpoint.

Two kinds of subscriber:
  - callbacks registered with subscribe(), called synchronously on publish
  - queues opened with listen(), consumed as an async iterator

A subscriber that raises, or whose queue is full, is logged and dropped.
It never affects other subscribers or the publishing job. A dropped queue
subscription is flagged so its consumer can end the stream and resync.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from promptwatch.core.config import settings

logger = logging.getLogger(__name__)

Callback = Callable[[dict[str, Any]], Any]


class Subscription:
    """Bounded queue fed by publish().

    ``dropped`` is set once publish() gives up on a full queue. Payloads
    already queued stay readable; nothing new arrives after that.
    """

    def __init__(self, maxsize: int):
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = False

    def __call__(self, payload: dict[str, Any]) -> None:
        self._queue.put_nowait(payload)

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def exhausted(self) -> bool:
        return self.dropped and self._queue.empty()

    async def get(self) -> dict[str, Any]:
        return await self._queue.get()


class UpdateBroker:
    def __init__(self, queue_size: int | None = None):
        self._subscribers: dict[int, list[Callback]] = {}
        self._queue_size = queue_size or settings.sse_queue_size

    def subscriber_count(self, business_id: int) -> int:
        return len(self._subscribers.get(business_id, ()))

    def subscribe(self, business_id: int, callback: Callback) -> Callable[[], None]:
        """Register ``callback`` for a business. Returns a function that unsubscribes it."""
        self._subscribers.setdefault(business_id, []).append(callback)
        logger.debug("Subscriber added for business %d (%d total)", business_id, self.subscriber_count(business_id))

        def unsubscribe() -> None:
            self._remove(business_id, callback)

        return unsubscribe

    def _remove(self, business_id: int, callback: Callback) -> None:
        subscribers = self._subscribers.get(business_id)
        if not subscribers:
            return
        try:
            subscribers.remove(callback)
        except ValueError:
            return
        if not subscribers:
            del self._subscribers[business_id]
        logger.debug("Subscriber removed for business %d", business_id)

    def publish(self, business_id: int, payload: dict[str, Any]) -> int:
        """Deliver ``payload`` to every current subscriber once. Returns the delivery count."""
        delivered = 0
        # Snapshot: callbacks may unsubscribe while we iterate
        for callback in list(self._subscribers.get(business_id, ())):
            try:
                callback(payload)
            except asyncio.QueueFull:
                logger.warning("Dropping slow subscriber for business %d: queue full", business_id)
                self._remove(business_id, callback)
                if isinstance(callback, Subscription):
                    callback.dropped = True
            except Exception:
                logger.exception("Subscriber for business %d failed, removing it", business_id)
                self._remove(business_id, callback)
            else:
                delivered += 1
        return delivered

    @asynccontextmanager
    async def listen(self, business_id: int) -> AsyncIterator[Subscription]:
        """Queue subscription, removed when the block exits.

        Usage:
            async with broker.listen(business_id) as subscription:
                payload = await subscription.get()
        """
        subscription = Subscription(self._queue_size)
        unsubscribe = self.subscribe(business_id, subscription)
        try:
            yield subscription
        finally:
            unsubscribe()

    async def stream(self, business_id: int) -> AsyncIterator[dict[str, Any]]:
        """Async iterator over the events of one business.

        Ends when the consumer stops, or after the last queued event once the
        subscription has been dropped.
        """
        async with self.listen(business_id) as subscription:
            while not subscription.exhausted:
                yield await subscription.get()
