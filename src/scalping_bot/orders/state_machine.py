"""Order lifecycle transition table."""

from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional

from ..core.enums import OrderStatus
from ..core.models import Order, utcnow


class InvalidTransition(Exception):
    """Raised when an order status change is not in the transition table."""

    def __init__(self, order: Order, target: OrderStatus, detail: Optional[str] = None):
        self.order = order
        self.target = target
        message = f"Order {order.id}: {order.status.value} -> {target.value} is not allowed"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


_S = OrderStatus

TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = MappingProxyType({
    _S.PENDING: frozenset({_S.SUBMITTED, _S.CANCELLED, _S.FAILED}),
    _S.SUBMITTED: frozenset({
        _S.PARTIALLY_FILLED, _S.FILLED, _S.CANCELLED, _S.REJECTED, _S.EXPIRED, _S.FAILED,
    }),
    _S.PARTIALLY_FILLED: frozenset({_S.FILLED, _S.CANCELLED, _S.FAILED}),
    _S.FILLED: frozenset(),
    _S.CANCELLED: frozenset(),
    _S.REJECTED: frozenset(),
    _S.FAILED: frozenset(),
    _S.EXPIRED: frozenset(),
})


def allowed_targets(status: OrderStatus) -> FrozenSet[OrderStatus]:
    return TRANSITIONS[status]


def can_transition(status: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[status]


def transition(
    order: Order,
    target: OrderStatus,
    filled_quantity: Optional[float] = None,
    **changes,
) -> Order:
    """Return a copy of ``order`` moved to ``target``.

    The input order is never modified. Raises InvalidTransition when the
    target is not reachable from the current status or the fill would
    break the quantity invariant.
    """
    if not can_transition(order.status, target):
        raise InvalidTransition(order, target)

    filled = order.filled_quantity if filled_quantity is None else filled_quantity
    if target is OrderStatus.FILLED and filled_quantity is None:
        filled = order.quantity
    if filled < order.filled_quantity:
        raise InvalidTransition(order, target, "filled quantity cannot decrease")
    if filled > order.quantity:
        raise InvalidTransition(order, target, "filled quantity exceeds requested quantity")

    update = dict(changes)
    update.update(status=target, filled_quantity=filled, updated_at=utcnow())
    return order.model_copy(update=update)
