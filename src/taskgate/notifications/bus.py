"""In-process lifecycle event bus."""

import logging
from typing import Any, Awaitable, Callable
from uuid import UUID

from taskgate.models import LifecycleEvent, TaskStatus
from taskgate.observability.metrics import metrics
from taskgate.utils.time import utc_now

logger = logging.getLogger(__name__)

Subscriber = Callable[[LifecycleEvent], Awaitable[None]]


class NotificationBus:
    """Fans lifecycle events out to async subscribers.

    Subscribers run in registration order. A failing subscriber is logged and
    counted; it never affects other subscribers or the publisher.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    async def publish(
        self,
        task_id: UUID,
        old_status: TaskStatus | None,
        new_status: TaskStatus,
        payload: dict[str, Any] | None = None,
    ) -> LifecycleEvent:
        event = LifecycleEvent(
            task_id=task_id,
            old_status=old_status,
            new_status=new_status,
            payload=payload or {},
            occurred_at=utc_now(),
        )
        metrics.inc_counter("bus.published")
        for subscriber in list(self._subscribers):
            try:
                await subscriber(event)
            except Exception as exc:
                metrics.inc_counter("bus.subscriber_failed")
                logger.warning(
                    "Subscriber %r failed for task %s (%s -> %s): %s",
                    subscriber,
                    task_id,
                    old_status.value if old_status else None,
                    new_status.value,
                    exc,
                    exc_info=True,
                )
        return event
