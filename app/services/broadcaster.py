"""Real-time fan-out of stored samples to connected observers.

Publishing only enqueues: every subscriber owns a bounded queue that its
connection drains at its own pace. A subscriber whose queue is full misses the
event, so one stalled client can never hold up ingestion.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from app.core.logging import get_logger
from app.models.telemetry import Telemetry
from app.schemas.telemetry import TelemetryResponse

logger = get_logger(__name__)

TELEMETRY_EVENT = "telemetry:update"

_CLOSED = object()


@dataclass(eq=False)
class Subscription:
    id: str
    queue: asyncio.Queue = field(repr=False)
    dropped: int = 0

    async def next_event(self) -> Optional[Dict[str, Any]]:
        """Wait for the next event; ``None`` once the broadcaster closed"""
        item = await self.queue.get()
        if item is _CLOSED:
            return None
        return item


class TelemetryBroadcaster:
    """Best-effort, at-most-once delivery to the subscribers live at publish time"""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: Set[Subscription] = set()
        self._ids = itertools.count(1)
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, client: str = "unknown") -> Subscription:
        subscription = Subscription(
            id=f"sub-{next(self._ids)}",
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        if self._closed:
            subscription.queue.put_nowait(_CLOSED)
            return subscription
        self._subscribers.add(subscription)
        logger.info("Client connected", subscription=subscription.id, client=client,
                    subscribers=len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.discard(subscription)
            logger.info("Client disconnected", subscription=subscription.id,
                        dropped=subscription.dropped, subscribers=len(self._subscribers))

    def publish(self, record: Any) -> int:
        """Enqueue one event for every live subscriber.

        Accepts a stored ``Telemetry`` row or an already serialised dict.
        Returns how many subscribers received the event. Never raises.
        """
        try:
            if not self._subscribers:
                return 0
            event = {"event": TELEMETRY_EVENT, "data": _serialise(record)}
        except Exception as e:
            logger.error("Failed to serialise telemetry event", error=e)
            return 0

        delivered = 0
        for subscription in list(self._subscribers):
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning("Subscriber queue full, event dropped",
                               subscription=subscription.id, dropped=subscription.dropped)
            except Exception as e:
                logger.error("Failed to enqueue telemetry event",
                             subscription=subscription.id, error=e)
        logger.debug("Broadcasted telemetry update", device_id=event["data"].get("deviceId"),
                     delivered=delivered)
        return delivered

    def close(self) -> None:
        """Tell every subscriber to stop and forget them"""
        self._closed = True
        for subscription in list(self._subscribers):
            _force_put(subscription.queue, _CLOSED)
        count = len(self._subscribers)
        self._subscribers.clear()
        logger.info("Broadcaster closed", subscribers=count)


def _serialise(record: Any) -> Dict[str, Any]:
    if isinstance(record, dict):
        return record
    if isinstance(record, Telemetry):
        record = TelemetryResponse.model_validate(record)
    return record.model_dump(mode="json", by_alias=True, exclude_none=True)


def _force_put(queue: asyncio.Queue, item: Any) -> None:
    # Make room for the sentinel even when the subscriber is stalled
    while True:
        try:
            queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
