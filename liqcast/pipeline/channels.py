"""
Event Channels — explicit pub/sub between pipeline components.

Every producer owns its channels (the gate owns the anomaly channel, the
monitor owns the risk and error channels, the calibration job owns the report
channel). Consumers subscribe with a callback or a queue and get back a
Subscription handle to cancel with. There is no process-wide broadcaster.

Usage:
    sub = validator.anomalies.subscribe(lambda event: ...)
    queue: asyncio.Queue = asyncio.Queue()
    sub = monitor.risks.subscribe_queue(queue)
    ...
    sub.cancel()
"""

import asyncio
import itertools
import threading
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Subscription:
    """Handle returned by EventChannel.subscribe*; cancel() detaches it."""
    channel: "EventChannel"
    subscriber_id: int

    def cancel(self) -> None:
        self.channel.unsubscribe(self)


class EventChannel(Generic[T]):
    """
    A named, typed fan-out channel.

    Delivery is synchronous and in subscription order. A failing subscriber is
    logged and skipped; it never blocks the other subscribers or the producer.
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: dict[int, Callable[[T], None]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: Callable[[T], None]) -> Subscription:
        """Register a callback invoked with every published event."""
        with self._lock:
            sub_id = next(self._ids)
            self._handlers[sub_id] = handler
        logger.debug("channel_subscriber_added", channel=self.name, total=self.subscriber_count)
        return Subscription(channel=self, subscriber_id=sub_id)

    def subscribe_queue(self, queue: asyncio.Queue) -> Subscription:
        """Register a queue; events are put without waiting."""

        def _enqueue(event: T) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("channel_queue_full", channel=self.name)

        return self.subscribe(_enqueue)

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._handlers.pop(subscription.subscriber_id, None)
        logger.debug("channel_subscriber_removed", channel=self.name, remaining=self.subscriber_count)

    def publish(self, event: T) -> int:
        """Deliver an event to all subscribers. Returns deliveries that succeeded."""
        with self._lock:
            handlers = list(self._handlers.items())

        delivered = 0
        for sub_id, handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    "channel_subscriber_failed",
                    channel=self.name,
                    subscriber_id=sub_id,
                    error=str(e),
                )
        return delivered


def collect(channel: EventChannel[T], sink: Optional[list] = None) -> tuple[Subscription, list]:
    """Subscribe a plain list to a channel (handy for reports and tests)."""
    events: list = sink if sink is not None else []
    return channel.subscribe(events.append), events
