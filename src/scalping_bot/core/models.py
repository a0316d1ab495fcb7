"""Core data models for the scalping bot."""

from datetime import datetime, timezone
from typing import Dict, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import OrderSide, OrderStatus, Outcome, RiskLevel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(BaseModel):
    """One exchange order. Status changes only through the order state machine."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Order ID")
    pair: str = Field(description="Trading pair")
    side: OrderSide = Field(description="Order side")
    quantity: float = Field(gt=0, description="Requested quantity")
    filled_quantity: float = Field(default=0.0, ge=0, description="Filled quantity")
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Order status")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update time")
    exchange_order_id: Optional[str] = Field(default=None, description="Exchange-assigned reference")

    # Position bookkeeping
    closes_order_id: Optional[str] = Field(default=None, description="Opening order this order offsets")
    average_price: Optional[float] = Field(default=None, description="Average fill price")
    stop_loss_price: Optional[float] = Field(default=None, description="Stop loss price")
    take_profit_price: Optional[float] = Field(default=None, description="Take profit price")

    @model_validator(mode="after")
    def _check_filled(self):
        if self.filled_quantity > self.quantity:
            raise ValueError(
                f"Filled quantity {self.filled_quantity} exceeds requested {self.quantity}"
            )
        return self

    @property
    def is_opening(self) -> bool:
        return self.closes_order_id is None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_cancellable(self) -> bool:
        return self.status.is_cancellable

    @property
    def affects_balance(self) -> bool:
        return self.status.affects_balance

    @property
    def remaining_quantity(self) -> float:
        return self.quantity - self.filled_quantity


class RiskState(BaseModel):
    """Immutable snapshot of the process-wide risk state."""

    model_config = ConfigDict(frozen=True)

    level: RiskLevel = Field(default=RiskLevel.MEDIUM, description="Effective risk level")
    volatility_level: Optional[RiskLevel] = Field(default=None, description="Volatility-based level")
    loss_level: Optional[RiskLevel] = Field(default=None, description="Loss-based level")
    volatility_pct: Optional[float] = Field(default=None, description="Observed volatility %")
    daily_loss_pct: float = Field(default=0.0, description="Current daily loss %")
    open_position_count: int = Field(default=0, ge=0, description="Open positions")
    classified_at: Optional[datetime] = Field(default=None, description="Last classification time")
    requires_immediate_action: bool = Field(default=False, description="VERY_HIGH or CRITICAL")

    @property
    def is_trading_allowed(self) -> bool:
        return self.classified_at is not None and self.level.is_trading_allowed

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.classified_at is None:
            return None
        return ((now or utcnow()) - self.classified_at).total_seconds()


class OpenPosition(BaseModel):
    """Proposal to open a new position."""

    model_config = ConfigDict(frozen=True)

    pair: str
    side: OrderSide
    size_pct: float = Field(gt=0, description="Position size as % of capital")
    correlations: Dict[str, float] = Field(
        default_factory=dict, description="Price correlation with each currently held pair"
    )


class TransitionRequest(BaseModel):
    """Proposal to move an order to another status."""

    model_config = ConfigDict(frozen=True)

    order: Order
    target: OrderStatus


class RiskDecision(BaseModel):
    """Outcome of a risk gate evaluation."""

    model_config = ConfigDict(frozen=True)

    approved: bool
    reason: Optional[str] = None
    level: Optional[RiskLevel] = None

    def __bool__(self) -> bool:
        return self.approved


class OrderResult(BaseModel):
    """Explicit outcome of an order mutation attempt."""

    model_config = ConfigDict(frozen=True)

    outcome: Outcome
    order: Optional[Order] = None
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome is Outcome.APPLIED

    @classmethod
    def applied_to(cls, order: Order) -> "OrderResult":
        return cls(outcome=Outcome.APPLIED, order=order)

    @classmethod
    def denied(cls, reason: str, order: Optional[Order] = None) -> "OrderResult":
        return cls(outcome=Outcome.DENIED, order=order, reason=reason)

    @classmethod
    def failed(cls, reason: str, order: Optional[Order] = None) -> "OrderResult":
        return cls(outcome=Outcome.FAILED, order=order, reason=reason)
