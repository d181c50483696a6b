import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Tuple

from api.metrics import metrics


logger = logging.getLogger(__name__)

Message = Dict[str, Any]
BootstrapProvider = Callable[[], List[Tuple[str, Any]]]


class SubscriberState(Enum):
    CONNECTING = "connecting"
    BOOTSTRAPPED = "bootstrapped"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"


@dataclass
class Subscriber:
    queue: asyncio.Queue
    subscriber_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SubscriberState = SubscriberState.CONNECTING

    async def messages(self) -> AsyncIterator[Message]:
        """Yield the bootstrap batch, then every incremental event, until disconnected."""
        while True:
            batch = await self.queue.get()
            if batch is None:
                return
            for message in batch:
                yield message
            if self.state is SubscriberState.BOOTSTRAPPED:
                self.state = SubscriberState.STREAMING

    def _close(self) -> None:
        self.state = SubscriberState.DISCONNECTED
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class Broadcaster:
    """Fan the same event stream out to every subscriber.

    ``subscribe`` snapshots current state and registers the subscriber under
    the same lock ``publish`` takes, so a new subscriber sees the bootstrap
    batch followed by exactly the events published after it. A subscriber
    whose queue fills up is disconnected; it is expected to reconnect and
    bootstrap again.
    """

    def __init__(self, bootstrap: BootstrapProvider, queue_size: int = 1000):
        if queue_size <= 1:
            raise ValueError(f"queue_size must be greater than 1, got {queue_size}")
        self._bootstrap = bootstrap
        self.queue_size = queue_size
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _message(event: str, data: Any) -> Message:
        return {"event": event, "data": data}

    def subscribe(self) -> Subscriber:
        subscriber = Subscriber(queue=asyncio.Queue(maxsize=self.queue_size))
        with self._lock:
            batch = [self._message(event, data) for event, data in self._bootstrap()]
            subscriber.queue.put_nowait(batch)
            subscriber.state = SubscriberState.BOOTSTRAPPED
            self._subscribers[subscriber.subscriber_id] = subscriber
            count = len(self._subscribers)
        metrics.update_subscribers(count)
        logger.info("Subscriber %s bootstrapped with %s events", subscriber.subscriber_id, len(batch))
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            removed = self._subscribers.pop(subscriber.subscriber_id, None)
            count = len(self._subscribers)
        if removed is not None:
            subscriber._close()
            metrics.update_subscribers(count)

    def publish(self, event: str, data: Any) -> int:
        """Enqueue ``event`` for every subscriber; returns how many received it."""
        message = self._message(event, data)
        slow: List[Subscriber] = []
        delivered = 0
        with self._lock:
            for subscriber in self._subscribers.values():
                try:
                    subscriber.queue.put_nowait([message])
                    delivered += 1
                except asyncio.QueueFull:
                    slow.append(subscriber)
        for subscriber in slow:
            logger.warning("Subscriber %s queue full; disconnecting", subscriber.subscriber_id)
            metrics.record_slow_subscriber()
            self.unsubscribe(subscriber)
        metrics.record_broadcast(event)
        return delivered

    def close_all(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for subscriber in subscribers:
            subscriber._close()
        metrics.update_subscribers(0)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
