"""Client side of the change channel.

A ChangeListener keeps one connection to the server's ``/ws`` endpoint open
and hands every message to ``on_message``. When the connection drops it waits
a fixed delay and tries again, for as long as it takes, until ``close()``.
Events emitted while it was disconnected are not replayed; the next query
picks up the resulting state.
"""
from dataclasses import dataclass, field
from structlog import get_logger
from websockets.exceptions import WebSocketException
from catalog.config import settings
from catalog.services.hub import SubscriptionState
from typing import Any, AsyncContextManager, Awaitable, Callable, Optional
import asyncio
import websockets

logger = get_logger()

Connect = Callable[[str], AsyncContextManager[Any]]

@dataclass
class ReconnectPolicy:
    """Fixed backoff, unbounded attempts unless ``max_attempts`` is set."""
    delay: float = field(default_factory=lambda: settings.RECONNECT_DELAY_SECONDS)
    max_attempts: Optional[int] = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def should_retry(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt < self.max_attempts

    async def wait(self, attempt: int) -> None:
        await self.sleep(self.delay)

class ChangeListener:
    def __init__(
        self,
        url: str,
        on_message: Callable[[str], Awaitable[Any]],
        connect: Connect = websockets.connect,
        policy: Optional[ReconnectPolicy] = None,
    ):
        self.url = url
        self.on_message = on_message
        self.policy = policy or ReconnectPolicy()
        self.state = SubscriptionState.CONNECTING
        self.attempts = 0
        self._connect = connect
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def _run(self):
        while self.state is not SubscriptionState.CLOSED:
            try:
                async with self._connect(self.url) as connection:
                    self.state = SubscriptionState.CONNECTED
                    self.attempts = 0
                    logger.info("Connected to change channel", url=self.url)
                    async for message in connection:
                        await self._dispatch(message)
                logger.info("Change channel closed by server", url=self.url)
            except (OSError, WebSocketException) as e:
                logger.warning("Change channel connection failed", url=self.url, error=str(e))
            except Exception as e:
                logger.error("Change channel failed unexpectedly", url=self.url, error=repr(e))
            if self.state is SubscriptionState.CLOSED:
                return
            self.attempts += 1
            if not self.policy.should_retry(self.attempts):
                logger.error("Giving up on change channel", url=self.url, attempts=self.attempts)
                self.state = SubscriptionState.CLOSED
                return
            self.state = SubscriptionState.RECONNECTING
            logger.info("Reconnecting to change channel", url=self.url, attempt=self.attempts, delay=self.policy.delay)
            await self.policy.wait(self.attempts)

    async def _dispatch(self, message):
        try:
            await self.on_message(message)
        except Exception as e:
            # A bad message must not take the connection down
            logger.error("Change message handler failed", error=str(e))

    async def close(self) -> None:
        if self.state is SubscriptionState.CLOSED and self._task is None:
            return
        self.state = SubscriptionState.CLOSED
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Change listener closed", url=self.url)
