"""Fan-out of change events to connected listeners.

Each listener gets its own bounded FIFO queue drained by its own task, so a
slow or broken listener never delays the others or the write path that
called ``broadcast``. The active set is an immutable snapshot replaced on
every join/leave; broadcast iterates whatever snapshot was current when it
started.
"""
from enum import Enum
from structlog import get_logger
from catalog.exceptions import NotificationFailure
from catalog.schemas.property import ChangeEvent
from typing import Awaitable, Callable, FrozenSet, Optional
import asyncio
import threading
import uuid

logger = get_logger()

Send = Callable[[str], Awaitable[None]]

class SubscriptionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"

class Subscription:
    def __init__(self, send: Send, name: Optional[str] = None, queue_size: int = 100):
        self.id = uuid.uuid4().hex
        self.name = name
        self.state = SubscriptionState.CONNECTING
        self._send = send
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None
        self._on_failure: Optional[Callable[["Subscription"], None]] = None

    def __repr__(self):
        return f"<Subscription {self.name or self.id} {self.state.value}>"

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self, on_failure: Callable[["Subscription"], None]) -> None:
        self._on_failure = on_failure
        self._task = asyncio.get_running_loop().create_task(self._pump())
        self.state = SubscriptionState.CONNECTED

    def deliver(self, message: str) -> None:
        if self.state is SubscriptionState.CLOSED:
            raise NotificationFailure(self.id, "listener closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            raise NotificationFailure(self.id, "delivery queue full")

    async def _pump(self):
        while True:
            message = await self._queue.get()
            try:
                await self._send(message)
            except Exception as e:
                # Terminal for this listener only
                logger.warning("Listener delivery failed", subscription_id=self.id, name=self.name, error=str(e))
                self._queue.task_done()
                self._discard_pending()
                if self._on_failure is not None:
                    self._on_failure(self)
                return
            self._queue.task_done()

    def _discard_pending(self):
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handed to ``send``."""
        await self._queue.join()

    def close(self) -> None:
        if self.state is SubscriptionState.CLOSED:
            return
        self.state = SubscriptionState.CLOSED
        self._discard_pending()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

class SubscriptionHub:
    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._listeners: FrozenSet[Subscription] = frozenset()

    @property
    def listeners(self) -> FrozenSet[Subscription]:
        return self._listeners

    def connect(self, send: Send, name: Optional[str] = None) -> Subscription:
        subscription = Subscription(send, name=name, queue_size=self._queue_size)
        subscription.start(on_failure=self.disconnect)
        with self._lock:
            self._listeners = self._listeners | {subscription}
        logger.info("Listener connected", subscription_id=subscription.id, name=name, listeners=len(self._listeners))
        return subscription

    def disconnect(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._listeners:
                self._listeners = self._listeners - {subscription}
        if subscription.state is not SubscriptionState.CLOSED:
            subscription.close()
            logger.info("Listener disconnected", subscription_id=subscription.id, name=subscription.name, listeners=len(self._listeners))

    def broadcast(self, event: ChangeEvent) -> int:
        """Enqueue ``event`` for every active listener without waiting.

        Returns how many listeners accepted it. A listener whose queue is
        full or that has closed misses this event; the others are unaffected.
        """
        message = event.to_message()
        delivered = 0
        for subscription in self._listeners:
            try:
                subscription.deliver(message)
                delivered += 1
            except NotificationFailure as e:
                logger.warning("Notification dropped", subscription_id=e.subscription_id, reason=e.reason, event_type=event.type)
        return delivered

    async def drain(self) -> None:
        await asyncio.gather(*(s.drain() for s in self._listeners))

    def close(self) -> None:
        with self._lock:
            listeners, self._listeners = self._listeners, frozenset()
        for subscription in listeners:
            subscription.close()
        logger.info("Subscription hub closed", closed=len(listeners))
