"""Core enumerations for the scalping bot.

Each enumeration is a plain tag. The behaviour attached to a tag lives in an
immutable attribute table keyed by that tag, and the enum members only read
from it.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping


def _parse_code(enum_cls, code, kind: str):
    if code is None or not str(code).strip():
        raise ValueError(f"{kind} code cannot be empty")
    normalized = str(code).strip().upper()
    for member in enum_cls:
        if member.value == normalized:
            return member
    raise ValueError(f"Unknown {kind} code: {code}")


class OrderSide(str, Enum):
    """Order direction."""
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def from_code(cls, code: str) -> "OrderSide":
        return _parse_code(cls, code, "order side")

    @property
    def opposite(self) -> "OrderSide":
        return _OPPOSITE_SIDE[self]

    @property
    def stop_loss_side(self) -> "OrderSide":
        return self.opposite

    @property
    def take_profit_side(self) -> "OrderSide":
        return self.opposite

    @property
    def pnl_multiplier(self) -> int:
        return 1 if self is OrderSide.BUY else -1

    @property
    def increases_base_asset(self) -> bool:
        return self is OrderSide.BUY

    @property
    def book_side(self) -> str:
        """Order book side this order consumes."""
        return "ASK" if self is OrderSide.BUY else "BID"

    def recommended_position_size(self, max_position_size_pct: float, cap_pct: float = 5.0) -> float:
        """Position size (% of capital) for a scalping entry, capped by configuration."""
        return min(max_position_size_pct, cap_pct)

    def action_description(self, trading_pair: str = "") -> str:
        verb = "Buy" if self is OrderSide.BUY else "Sell"
        if not trading_pair:
            return verb
        base = re.sub(r"[/\-]?(USDT|BUSD|USDC)$", "", trading_pair.upper())
        return f"{verb} {base}"


_OPPOSITE_SIDE: Mapping[OrderSide, OrderSide] = MappingProxyType({
    OrderSide.BUY: OrderSide.SELL,
    OrderSide.SELL: OrderSide.BUY,
})


@dataclass(frozen=True)
class StatusAttributes:
    label: str
    on_exchange: bool
    cancellable: bool
    terminal: bool
    affects_balance: bool
    recommended_action: str


class OrderStatus(str, Enum):
    """Order lifecycle statuses."""
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @classmethod
    def from_code(cls, code: str) -> "OrderStatus":
        return _parse_code(cls, code, "order status")

    @property
    def attributes(self) -> StatusAttributes:
        return STATUS_ATTRIBUTES[self]

    @property
    def is_terminal(self) -> bool:
        return STATUS_ATTRIBUTES[self].terminal

    @property
    def is_cancellable(self) -> bool:
        return STATUS_ATTRIBUTES[self].cancellable

    @property
    def affects_balance(self) -> bool:
        return STATUS_ATTRIBUTES[self].affects_balance

    @property
    def is_on_exchange(self) -> bool:
        return STATUS_ATTRIBUTES[self].on_exchange

    @property
    def is_successful(self) -> bool:
        return self in successful_statuses()

    @property
    def is_error(self) -> bool:
        return self in error_statuses()

    @property
    def requires_monitoring(self) -> bool:
        return self.is_on_exchange or self is OrderStatus.PENDING

    @property
    def requires_notification(self) -> bool:
        return self.is_error or self in (OrderStatus.FILLED, OrderStatus.EXPIRED)

    @property
    def recommended_action(self) -> str:
        return STATUS_ATTRIBUTES[self].recommended_action

    @property
    def log_label(self) -> str:
        return STATUS_ATTRIBUTES[self].label.upper()


STATUS_ATTRIBUTES: Mapping[OrderStatus, StatusAttributes] = MappingProxyType({
    OrderStatus.PENDING: StatusAttributes(
        "Awaiting submission", False, True, False, False, "Wait for submission to the exchange"),
    OrderStatus.SUBMITTED: StatusAttributes(
        "Submitted to exchange", True, True, False, True, "Monitor execution"),
    OrderStatus.PARTIALLY_FILLED: StatusAttributes(
        "Partially filled", True, True, False, True, "Track the remaining quantity"),
    OrderStatus.FILLED: StatusAttributes(
        "Filled", False, False, True, True, "Update position and balance"),
    OrderStatus.CANCELLED: StatusAttributes(
        "Cancelled", False, False, True, False, "Review the cancellation reason"),
    OrderStatus.REJECTED: StatusAttributes(
        "Rejected by exchange", False, False, True, False, "Check order parameters"),
    OrderStatus.FAILED: StatusAttributes(
        "Processing failed", False, False, True, False, "Investigate the system error"),
    OrderStatus.EXPIRED: StatusAttributes(
        "Expired", False, False, True, False, "Revisit strategy timing"),
})


def active_statuses() -> FrozenSet[OrderStatus]:
    """Non-terminal statuses."""
    return frozenset(s for s, a in STATUS_ATTRIBUTES.items() if not a.terminal)


def on_exchange_statuses() -> FrozenSet[OrderStatus]:
    """Statuses of orders currently live on the exchange."""
    return frozenset(s for s, a in STATUS_ATTRIBUTES.items() if a.on_exchange)


def terminal_statuses() -> FrozenSet[OrderStatus]:
    return frozenset(s for s, a in STATUS_ATTRIBUTES.items() if a.terminal)


def successful_statuses() -> FrozenSet[OrderStatus]:
    return frozenset({OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED})


def error_statuses() -> FrozenSet[OrderStatus]:
    return frozenset({OrderStatus.REJECTED, OrderStatus.FAILED})


@dataclass(frozen=True)
class RiskLimits:
    """Limits attached to a risk level. Percentages are of account capital."""
    max_position_size_pct: float
    stop_loss_pct: float
    take_profit_pct: float
    max_simultaneous_positions: int
    daily_loss_limit_pct: float
    analysis_interval_seconds: int
    max_volatility_pct: float

    @property
    def risk_reward_ratio(self) -> float:
        if self.stop_loss_pct == 0:
            return 0.0
        ratio = Decimal(str(self.take_profit_pct)) / Decimal(str(self.stop_loss_pct))
        return float(ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

    @property
    def max_portfolio_exposure_pct(self) -> float:
        return self.max_position_size_pct * self.max_simultaneous_positions


class RiskLevel(str, Enum):
    """Risk levels, ordered from least to most severe."""
    VERY_LOW = "VERY_LOW"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def from_code(cls, code: str) -> "RiskLevel":
        return _parse_code(cls, code, "risk level")

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    def __lt__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.severity < other.severity

    def __le__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.severity <= other.severity

    def __gt__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.severity > other.severity

    def __ge__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.severity >= other.severity

    @property
    def limits(self) -> RiskLimits:
        """Default limits for this level."""
        return DEFAULT_RISK_LIMITS[self]

    @property
    def is_trading_allowed(self) -> bool:
        return self is not RiskLevel.CRITICAL

    @property
    def requires_immediate_action(self) -> bool:
        return self in (RiskLevel.VERY_HIGH, RiskLevel.CRITICAL)

    @property
    def recommended_action(self) -> str:
        return _RECOMMENDED_ACTIONS[self]

    @property
    def risk_reward_ratio(self) -> float:
        return self.limits.risk_reward_ratio

    @property
    def max_portfolio_exposure_pct(self) -> float:
        return self.limits.max_portfolio_exposure_pct

    def is_compatible_with(self, volatility_pct: float, open_positions: int) -> bool:
        if self is RiskLevel.CRITICAL:
            return False
        limits = self.limits
        return (volatility_pct <= limits.max_volatility_pct
                and open_positions <= limits.max_simultaneous_positions)

    @property
    def log_label(self) -> str:
        return f"RISK {self.value}"


_SEVERITY: Mapping[RiskLevel, int] = MappingProxyType({
    level: rank for rank, level in enumerate(RiskLevel, start=1)
})

_RECOMMENDED_ACTIONS: Mapping[RiskLevel, str] = MappingProxyType({
    RiskLevel.VERY_LOW: "Aggressiveness may be increased",
    RiskLevel.LOW: "Standard trading",
    RiskLevel.MEDIUM: "Monitor market conditions",
    RiskLevel.HIGH: "Reduce position sizes",
    RiskLevel.VERY_HIGH: "Close part of the positions",
    RiskLevel.CRITICAL: "STOP ALL TRADING",
})

DEFAULT_RISK_LIMITS: Mapping[RiskLevel, RiskLimits] = MappingProxyType({
    RiskLevel.VERY_LOW: RiskLimits(1.0, 0.2, 0.4, 3, 0.5, 30, 2.0),
    RiskLevel.LOW: RiskLimits(2.5, 0.3, 0.6, 5, 1.0, 20, 4.0),
    RiskLevel.MEDIUM: RiskLimits(5.0, 0.4, 0.8, 10, 2.0, 15, 6.0),
    RiskLevel.HIGH: RiskLimits(7.5, 0.6, 1.2, 15, 3.0, 10, 10.0),
    RiskLevel.VERY_HIGH: RiskLimits(10.0, 1.0, 2.0, 20, 5.0, 5, 20.0),
    # Trading is forbidden
    RiskLevel.CRITICAL: RiskLimits(0.0, 0.0, 0.0, 0, 0.0, 0, 0.0),
})


class EmergencyState(str, Enum):
    """Emergency stop controller states."""
    NORMAL = "NORMAL"
    STOPPED = "STOPPED"


class Outcome(str, Enum):
    """Result of an order mutation attempt."""
    APPLIED = "applied"
    DENIED = "denied"
    FAILED = "failed"
