"""Risk classification and gating module."""

from .classifier import classify_by_volatility, classify_by_loss, effective_level
from .gate import RiskGate, RiskDenied

__all__ = [
    "classify_by_volatility",
    "classify_by_loss",
    "effective_level",
    "RiskGate",
    "RiskDenied",
]
