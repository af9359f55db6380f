"""
Push status channel.

Every state change committed by the pool registry is published here.
Delivery is at least once: a subscriber callback that raises is retried
with backoff a bounded number of times, and consumers de-duplicate on
``event_id``.
"""

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..models.runner import StatusEvent

Subscriber = Callable[[StatusEvent], Awaitable[Any]]


class _Subscription:
    def __init__(self, name: str, callback: Subscriber, max_queue: int) -> None:
        self.name = name
        self.callback = callback
        self.queue: "asyncio.Queue[StatusEvent]" = asyncio.Queue(maxsize=max_queue)
        self.task: Optional[asyncio.Task] = None


class StatusChannel:
    """Fan-out of status events to subscribers, one queue and worker per subscriber."""

    def __init__(self,
                 max_attempts: int = 3,
                 retry_delay: float = 1.0,
                 max_queue: int = 1000,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 logger: Any = None) -> None:
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.max_queue = max_queue
        self._sleep = sleep
        self._sequence = itertools.count(1)
        self._subscriptions: Dict[str, _Subscription] = {}
        self.history: List[StatusEvent] = []
        self.history_limit = 500
        self.logger = (logger or structlog.get_logger()).bind(component="status_channel")

    def subscribe(self, name: str, callback: Subscriber) -> None:
        self.unsubscribe(name)
        subscription = _Subscription(name, callback, self.max_queue)
        subscription.task = asyncio.create_task(self._deliver(subscription), name=f"status:{name}")
        self._subscriptions[name] = subscription

    def unsubscribe(self, name: str) -> None:
        subscription = self._subscriptions.pop(name, None)
        if subscription and subscription.task:
            subscription.task.cancel()

    def publish(self, event: StatusEvent) -> StatusEvent:
        """Stamp a sequence number on ``event`` and queue it for every subscriber."""
        event = event.model_copy(update={"sequence": next(self._sequence)})
        self.history.append(event)
        del self.history[:-self.history_limit]

        for subscription in self._subscriptions.values():
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                self.logger.warning(
                    "Status subscriber queue full, dropping event",
                    subscriber=subscription.name,
                    event_id=event.event_id,
                )
        return event

    async def drain(self) -> None:
        """Wait until every subscriber has processed its queue."""
        for subscription in list(self._subscriptions.values()):
            await subscription.queue.join()

    async def close(self) -> None:
        for name in list(self._subscriptions):
            self.unsubscribe(name)

    async def _deliver(self, subscription: _Subscription) -> None:
        while True:
            event = await subscription.queue.get()
            try:
                for attempt in range(1, self.max_attempts + 1):
                    try:
                        await subscription.callback(event)
                        break
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        if attempt == self.max_attempts:
                            self.logger.error(
                                "Status event delivery failed",
                                subscriber=subscription.name,
                                event_id=event.event_id,
                                attempts=attempt,
                                error=str(e),
                            )
                            break
                        await self._sleep(self.retry_delay * 2 ** (attempt - 1))
            finally:
                subscription.queue.task_done()
