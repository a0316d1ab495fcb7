"""Core module for the scalping bot."""

from .enums import (
    OrderSide, OrderStatus, RiskLevel, RiskLimits, EmergencyState, Outcome,
    DEFAULT_RISK_LIMITS, active_statuses, terminal_statuses,
)
from .models import (
    Order, RiskState, OpenPosition, TransitionRequest, RiskDecision, OrderResult,
)
from .state_lock import StateManager, StateLock

__all__ = [
    "OrderSide",
    "OrderStatus",
    "RiskLevel",
    "RiskLimits",
    "EmergencyState",
    "Outcome",
    "DEFAULT_RISK_LIMITS",
    "active_statuses",
    "terminal_statuses",
    "Order",
    "RiskState",
    "OpenPosition",
    "TransitionRequest",
    "RiskDecision",
    "OrderResult",
    "StateManager",
    "StateLock",
]
