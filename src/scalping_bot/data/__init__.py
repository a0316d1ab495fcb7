"""External data contracts: signals, market data and persistence."""

from .signals import SignalSource, SignalUnavailable, IndicatorSignal, SignalAction
from .market import (
    MarketDataSource, CCXTMarketDataSource, MarketDataCache, MarketSnapshot,
    MarketDataUnavailable, CorrelationSource, PandasCorrelationSource,
)
from .repository import OrderRepository, InMemoryOrderRepository

__all__ = [
    "SignalSource",
    "SignalUnavailable",
    "IndicatorSignal",
    "SignalAction",
    "MarketDataSource",
    "CCXTMarketDataSource",
    "MarketDataCache",
    "MarketSnapshot",
    "MarketDataUnavailable",
    "CorrelationSource",
    "PandasCorrelationSource",
    "OrderRepository",
    "InMemoryOrderRepository",
]
