"""
Scalping Bot with Risk-Gated Scheduling

Short-horizon crypto trading controller. Every new position passes the
risk gate against a fresh risk snapshot, and an emergency stop can halt
trading and unwind open orders at any time.
"""

__version__ = "0.1.0"
__author__ = "Scalping Bot Team"

from .core.enums import OrderSide, OrderStatus, RiskLevel
from .core.models import Order, RiskState, OrderResult
from .risk.gate import RiskGate
from .orders.tracker import OrderTracker

__all__ = [
    "OrderSide",
    "OrderStatus",
    "RiskLevel",
    "Order",
    "RiskState",
    "OrderResult",
    "RiskGate",
    "OrderTracker",
]
