"""Named async locks guarding shared risk and order state."""

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import Dict

logger = logging.getLogger(__name__)

RISK_STATE_LOCK = "risk_state"
POSITION_RESERVATION_LOCK = "position_reservation"


def order_lock_name(order_id: str) -> str:
    return f"order:{order_id}"


class StateLock:
    """Async lock for managing state access."""

    def __init__(self, name: str):
        self.name = name
        self._lock = asyncio.Lock()
        self._waiters = 0

    async def acquire(self) -> None:
        self._waiters += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiters -= 1
        logger.debug(f"State lock '{self.name}' acquired")

    def release(self) -> None:
        if self._lock.locked():
            self._lock.release()
            logger.debug(f"State lock '{self.name}' released")

    @asynccontextmanager
    async def locked(self):
        """Context manager for locked access."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def is_locked(self) -> bool:
        return self._lock.locked()

    def is_idle(self) -> bool:
        return not self._lock.locked() and self._waiters == 0


class StateManager:
    """Owns the named locks for one bot run.

    A single instance is created by the bot and passed to every component
    that touches shared state.
    """

    def __init__(self):
        self._locks: Dict[str, StateLock] = {}
        logger.info("State manager initialized")

    def get_lock(self, name: str) -> StateLock:
        """Get or create a state lock."""
        if name not in self._locks:
            self._locks[name] = StateLock(name)
        return self._locks[name]

    @asynccontextmanager
    async def lock_state(self, lock_name: str):
        """Context manager for locking specific state."""
        lock = self.get_lock(lock_name)
        async with lock.locked():
            yield

    def discard(self, lock_name: str) -> None:
        """Forget a lock nobody holds or waits on."""
        lock = self._locks.get(lock_name)
        if lock is not None and lock.is_idle():
            del self._locks[lock_name]

    def get_lock_status(self) -> Dict[str, bool]:
        """Name -> currently held."""
        return {name: lock.is_locked() for name, lock in self._locks.items()}
