"""Order registry with per-order serialized transitions and position accounting."""

import asyncio
from typing import Dict, List, Optional
import logging

from ..core.enums import OrderStatus
from ..core.models import Order, OrderResult, utcnow
from ..core.state_lock import StateManager, order_lock_name
from ..data.repository import OrderRepository
from .state_machine import InvalidTransition, transition as apply_transition

logger = logging.getLogger(__name__)

ANNOTATABLE_FIELDS = frozenset({
    "exchange_order_id", "average_price", "stop_loss_price", "take_profit_price",
})


class OrderTracker:
    """Holds the orders of the current run.

    At most one transition per order id is in flight at a time. The new
    order value replaces the old one in a single assignment, so concurrent
    readers see either the previous or the next version.
    """

    def __init__(self, repository: OrderRepository, state_manager: StateManager):
        self.repository = repository
        self.state_manager = state_manager
        self._orders: Dict[str, Order] = {}
        self._realized_pnl = 0.0
        self._closed_positions_today = 0
        logger.info("Order tracker initialized")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def load_active(self) -> int:
        """Adopt the repository's non-terminal orders, e.g. after a restart."""
        active = await self.repository.list_active()
        for order in active:
            self._orders.setdefault(order.id, order)
        logger.info(f"Loaded {len(active)} active orders from repository")
        return len(active)

    def register(self, order: Order) -> None:
        """Start tracking a freshly created PENDING order."""
        if order.id in self._orders:
            raise ValueError(f"Order {order.id} is already tracked")
        if order.status is not OrderStatus.PENDING:
            raise ValueError(f"New orders must be PENDING, got {order.status.value}")
        self._orders[order.id] = order

    async def persist(self, order_id: str) -> None:
        order = self._orders.get(order_id)
        if order is not None:
            await self._save(order)

    async def _save(self, order: Order) -> None:
        """Persist to completion. A cancelled caller waits for the save before
        the cancellation propagates, so the order lock outlives the write."""
        save = asyncio.ensure_future(self.repository.save(order))
        try:
            await asyncio.shield(save)
        except asyncio.CancelledError:
            await asyncio.wait({save})
            raise

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        filled_quantity: Optional[float] = None,
        **changes,
    ) -> OrderResult:
        """Move an order to ``target`` through the transition table."""
        lock_name = order_lock_name(order_id)
        async with self.state_manager.lock_state(lock_name):
            order = self._orders.get(order_id)
            if order is None:
                order = await self.repository.load(order_id)
                if order is None:
                    return OrderResult.failed(f"Unknown order {order_id}")
                self._orders[order_id] = order

            try:
                updated = apply_transition(order, target, filled_quantity, **changes)
            except InvalidTransition as e:
                logger.error(f"Rejected order transition: {e}")
                return OrderResult.denied(str(e), order)

            self._orders[order_id] = updated
            if updated.closes_order_id and updated.filled_quantity > order.filled_quantity:
                self._book_close(updated, updated.filled_quantity - order.filled_quantity, order)

            # The mutation is already visible; persisting must not be cut short.
            await self._save(updated)

        if updated.is_terminal:
            self.state_manager.discard(lock_name)
        logger.info(
            f"Order {order_id} {order.status.value} -> {updated.status.value} "
            f"({updated.filled_quantity}/{updated.quantity} {updated.pair})"
        )
        return OrderResult.applied_to(updated)

    async def annotate(
        self,
        order_id: str,
        filled_quantity: Optional[float] = None,
        **changes,
    ) -> OrderResult:
        """Update bookkeeping fields of a live order without changing its status.

        A fill increase is only accepted while the order is PARTIALLY_FILLED.
        """
        unknown = set(changes) - ANNOTATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be annotated: {sorted(unknown)}")

        async with self.state_manager.lock_state(order_lock_name(order_id)):
            order = self._orders.get(order_id)
            if order is None:
                return OrderResult.failed(f"Unknown order {order_id}")
            if order.is_terminal:
                reason = f"Order {order_id} is {order.status.value} and read-only"
                logger.error(f"Rejected order update: {reason}")
                return OrderResult.denied(reason, order)

            update = dict(changes)
            if filled_quantity is not None and filled_quantity != order.filled_quantity:
                if order.status is not OrderStatus.PARTIALLY_FILLED:
                    return OrderResult.denied(
                        f"Fill updates need PARTIALLY_FILLED, order {order_id} is {order.status.value}",
                        order,
                    )
                if not order.filled_quantity <= filled_quantity <= order.quantity:
                    return OrderResult.denied(
                        f"Fill {filled_quantity} outside [{order.filled_quantity}, {order.quantity}]",
                        order,
                    )
                update["filled_quantity"] = filled_quantity
            update["updated_at"] = utcnow()

            updated = order.model_copy(update=update)
            self._orders[order_id] = updated
            if updated.closes_order_id and updated.filled_quantity > order.filled_quantity:
                self._book_close(updated, updated.filled_quantity - order.filled_quantity, order)
            await self._save(updated)

        return OrderResult.applied_to(updated)

    def _book_close(self, closing: Order, delta_qty: float, previous: Order) -> None:
        opening = self._orders.get(closing.closes_order_id)
        if opening is None or opening.average_price is None:
            return
        exit_price = closing.average_price or previous.average_price
        if exit_price is None:
            return
        pnl = (exit_price - opening.average_price) * delta_qty * opening.side.pnl_multiplier
        self._realized_pnl += pnl
        if self.position_remaining(opening.id) <= 0:
            self._closed_positions_today += 1
            logger.info(f"Position {opening.id} on {opening.pair} closed, realized {pnl:.4f}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def orders(self, pair: Optional[str] = None) -> List[Order]:
        return [o for o in self._orders.values() if pair is None or o.pair == pair]

    def active_orders(self) -> List[Order]:
        """Orders in a non-terminal status."""
        return [o for o in self._orders.values() if not o.is_terminal]

    def closing_orders(self, opening_id: str) -> List[Order]:
        return [o for o in self._orders.values() if o.closes_order_id == opening_id]

    def closed_quantity(self, opening_id: str) -> float:
        return sum(o.filled_quantity for o in self.closing_orders(opening_id))

    def position_remaining(self, opening_id: str) -> float:
        opening = self._orders.get(opening_id)
        if opening is None:
            return 0.0
        return max(0.0, opening.filled_quantity - self.closed_quantity(opening_id))

    def pending_close(self, opening_id: str) -> Optional[Order]:
        """In-flight closing order for a position, if any."""
        for order in self.closing_orders(opening_id):
            if not order.is_terminal:
                return order
        return None

    def is_position_open(self, order: Order) -> bool:
        if not order.is_opening:
            return False
        if not order.is_terminal:
            return True
        return self.position_remaining(order.id) > 0

    def open_positions(self, pair: Optional[str] = None) -> List[Order]:
        """Opening orders that still hold, or may still acquire, exposure."""
        return [o for o in self.orders(pair) if self.is_position_open(o)]

    def open_position_count(self) -> int:
        return len(self.open_positions())

    def open_pairs(self) -> List[str]:
        return sorted({o.pair for o in self.open_positions()})

    # ------------------------------------------------------------------
    # Daily counters
    # ------------------------------------------------------------------

    @property
    def realized_pnl(self) -> float:
        return self._realized_pnl

    @property
    def closed_positions_today(self) -> int:
        return self._closed_positions_today

    def reset_daily_counters(self) -> None:
        logger.info(
            f"Resetting daily position counters (realized P&L {self._realized_pnl:.4f}, "
            f"{self._closed_positions_today} closed positions)"
        )
        self._realized_pnl = 0.0
        self._closed_positions_today = 0
