"""Fire-and-forget notification delivery."""

from abc import ABC, abstractmethod
from typing import Set
import asyncio
import logging

from .events import NotificationEvent

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Destination for notification events (chat, email, ...)."""

    @abstractmethod
    async def send(self, event: NotificationEvent) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes events to the log."""

    async def send(self, event: NotificationEvent) -> None:
        logger.info(f"[{event.kind}] {event.summary()}")


class NotificationDispatcher:
    """
    Delivers events to a sink in the background.

    ``publish`` never blocks and never raises; a failed delivery is retried
    up to ``max_attempts`` times and then dropped with an error log.
    """

    def __init__(self, sink: NotificationSink, max_attempts: int = 3, retry_delay: float = 1.0):
        self.sink = sink
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._pending: Set[asyncio.Task] = set()
        self._delivered = 0
        self._dropped = 0

    def publish(self, event: NotificationEvent) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except RuntimeError:
            logger.error(f"No running loop, dropping notification {event.kind}")
            self._dropped += 1
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: NotificationEvent) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.sink.send(event)
                self._delivered += 1
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    f"Notification {event.kind} attempt {attempt}/{self.max_attempts} failed: {e}"
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay)
        self._dropped += 1
        logger.error(f"Notification {event.kind} dropped after {self.max_attempts} attempts")

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_stats(self) -> dict:
        return {
            "delivered": self._delivered,
            "dropped": self._dropped,
            "pending": len(self._pending),
        }
