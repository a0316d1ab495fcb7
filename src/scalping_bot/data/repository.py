"""Order persistence contract."""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import logging

from ..core.models import Order

logger = logging.getLogger(__name__)


class OrderRepository(ABC):
    """Durable order storage. The bot never deletes or archives orders itself."""

    @abstractmethod
    async def save(self, order: Order) -> None:
        """Insert or replace an order."""
        pass

    @abstractmethod
    async def load(self, order_id: str) -> Optional[Order]:
        """Load an order by id."""
        pass

    @abstractmethod
    async def list_active(self) -> List[Order]:
        """All orders in a non-terminal status."""
        pass


class InMemoryOrderRepository(OrderRepository):
    """Process-local repository, used for paper trading and tests."""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        logger.info("In-memory order repository initialized")

    async def save(self, order: Order) -> None:
        self._orders[order.id] = order

    async def load(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    async def list_active(self) -> List[Order]:
        return [o for o in self._orders.values() if not o.is_terminal]

    def all_orders(self) -> List[Order]:
        return list(self._orders.values())
