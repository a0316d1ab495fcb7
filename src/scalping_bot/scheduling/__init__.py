"""Task scheduling module."""

from .scheduler import (
    TaskScheduler, ScheduledTask, RunResult,
    RISK_MONITORING, TRADING_ANALYSIS, MARKET_DATA_COLLECTION, DAILY_RESET,
)

__all__ = [
    "TaskScheduler",
    "ScheduledTask",
    "RunResult",
    "RISK_MONITORING",
    "TRADING_ANALYSIS",
    "MARKET_DATA_COLLECTION",
    "DAILY_RESET",
]
