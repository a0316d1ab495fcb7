"""Notification events emitted by the bot."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.models import Order, utcnow


class NotificationEvent(BaseModel):
    """Base notification event."""

    model_config = ConfigDict(frozen=True)

    kind: str = "event"
    occurred_at: datetime = Field(default_factory=utcnow)

    def summary(self) -> str:
        return self.kind


class OrderOpened(NotificationEvent):
    kind: str = "order_opened"
    order: Order

    def summary(self) -> str:
        o = self.order
        return f"Opened {o.side.action_description(o.pair)} qty={o.quantity} ({o.status.value})"


class OrderClosed(NotificationEvent):
    kind: str = "order_closed"
    order: Order
    reason: str = ""

    def summary(self) -> str:
        o = self.order
        return f"Closed {o.pair} order {o.id} ({o.status.value}) {self.reason}".rstrip()


class StopLossTriggered(NotificationEvent):
    kind: str = "stop_loss_triggered"
    order: Order
    price: float
    stop_loss_price: float

    def summary(self) -> str:
        return (
            f"Stop loss hit on {self.order.pair}: price {self.price} "
            f"crossed {self.stop_loss_price}"
        )


class DailyLimitReached(NotificationEvent):
    kind: str = "daily_limit_reached"
    daily_loss_pct: float
    limit_pct: float

    def summary(self) -> str:
        return f"Daily loss {self.daily_loss_pct:.2f}% reached limit {self.limit_pct:.2f}%"


class EmergencyStop(NotificationEvent):
    kind: str = "emergency_stop"
    reason: str
    cancelled_order_ids: List[str] = Field(default_factory=list)
    failed_order_ids: List[str] = Field(default_factory=list)
    closed_position_ids: List[str] = Field(default_factory=list)
    failed_close_ids: List[str] = Field(default_factory=list)

    def summary(self) -> str:
        return (
            f"EMERGENCY STOP: {self.reason} (cancelled {len(self.cancelled_order_ids)}, "
            f"failed {len(self.failed_order_ids)}; closed {len(self.closed_position_ids)} positions, "
            f"failed {len(self.failed_close_ids)})"
        )


class CollaboratorUnavailable(NotificationEvent):
    kind: str = "collaborator_unavailable"
    task: str
    detail: str
    pair: Optional[str] = None

    def summary(self) -> str:
        where = f" [{self.pair}]" if self.pair else ""
        return f"{self.task}{where}: {self.detail}"
