"""Market data collection, caching and pairwise correlation."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional
import asyncio
import logging

import numpy as np
import pandas as pd
import ccxt.async_support as ccxt

from ..core.models import utcnow

logger = logging.getLogger(__name__)


class MarketDataUnavailable(Exception):
    """Raised when market data for a pair cannot be fetched."""
    pass


@dataclass
class MarketSnapshot:
    """Latest market data for one pair."""
    pair: str
    price: float
    ohlcv: pd.DataFrame = field(default_factory=pd.DataFrame)
    fetched_at: datetime = field(default_factory=utcnow)
    stale: bool = False
    stale_reason: Optional[str] = None

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.fetched_at).total_seconds()


class MarketDataSource(ABC):
    """Abstract market data provider."""

    timeout: float = 10.0

    @abstractmethod
    async def fetch_snapshot(self, pair: str) -> MarketSnapshot:
        """Fetch the latest price and recent bars for a pair."""
        pass

    async def close(self):
        pass


class CCXTMarketDataSource(MarketDataSource):
    """CCXT-based market data source."""

    def __init__(
        self,
        exchange_name: str,
        config: Optional[Dict] = None,
        timeframe: str = "1m",
        bars: int = 100,
        timeout: float = 10.0,
    ):
        self.exchange_name = exchange_name
        self.config = config or {}
        self.timeframe = timeframe
        self.bars = bars
        self.timeout = timeout

        is_sandbox = self.config.get("sandbox", False)
        ccxt_keys = {k: v for k, v in self.config.items() if k != "sandbox"}
        exchange_class = getattr(ccxt, exchange_name)
        self.exchange = exchange_class({
            "enableRateLimit": True,
            "timeout": int(timeout * 1000),
            **ccxt_keys,
        })
        if is_sandbox:
            self.exchange.set_sandbox_mode(True)

        logger.info(f"Initialized CCXT market data source for {exchange_name} (sandbox={is_sandbox})")

    async def fetch_snapshot(self, pair: str) -> MarketSnapshot:
        try:
            ticker = await self.exchange.fetch_ticker(pair)
            raw = await self.exchange.fetch_ohlcv(pair, self.timeframe, limit=self.bars)
        except ccxt.BaseError as e:
            raise MarketDataUnavailable(f"{self.exchange_name} {pair}: {e}") from e

        ohlcv = pd.DataFrame(raw, columns=["timestamp", "open", "high", "low", "close", "volume"])
        ohlcv["timestamp"] = pd.to_datetime(ohlcv["timestamp"], unit="ms", utc=True)
        ohlcv.set_index("timestamp", inplace=True)

        price = ticker.get("last")
        if price is None and not ohlcv.empty:
            price = float(ohlcv["close"].iloc[-1])
        if not price:
            raise MarketDataUnavailable(f"No price for {pair}")

        logger.debug(f"Fetched {len(ohlcv)} bars for {pair}, last price {price}")
        return MarketSnapshot(pair=pair, price=float(price), ohlcv=ohlcv)

    async def close(self):
        await self.exchange.close()
        logger.info(f"Closed market data connection to {self.exchange_name}")


class MarketDataCache:
    """Last known market data per pair. Failed refreshes only mark entries stale."""

    def __init__(self, max_age_seconds: float = 180.0):
        self.max_age_seconds = max_age_seconds
        self._snapshots: Dict[str, MarketSnapshot] = {}

    def update(self, snapshot: MarketSnapshot) -> None:
        self._snapshots[snapshot.pair] = snapshot

    def mark_stale(self, pair: str, reason: str) -> None:
        snapshot = self._snapshots.get(pair)
        if snapshot is not None:
            snapshot.stale = True
            snapshot.stale_reason = reason

    def get(self, pair: str) -> Optional[MarketSnapshot]:
        return self._snapshots.get(pair)

    def is_fresh(self, pair: str, now: Optional[datetime] = None) -> bool:
        snapshot = self._snapshots.get(pair)
        if snapshot is None or snapshot.stale:
            return False
        return snapshot.age_seconds(now) <= self.max_age_seconds

    def price(self, pair: str, now: Optional[datetime] = None) -> Optional[float]:
        """Latest price, or None if missing or stale."""
        if not self.is_fresh(pair, now):
            return None
        return self._snapshots[pair].price

    def pairs(self) -> List[str]:
        return list(self._snapshots)


async def collect(source: MarketDataSource, cache: MarketDataCache, pairs: Iterable[str]) -> Dict[str, bool]:
    """Refresh the cache for each pair; returns pair -> refreshed."""
    results = {}
    for pair in pairs:
        try:
            snapshot = await asyncio.wait_for(source.fetch_snapshot(pair), timeout=source.timeout)
            cache.update(snapshot)
            results[pair] = True
        except asyncio.TimeoutError:
            reason = f"fetch timed out after {source.timeout}s"
            logger.warning(f"Market data for {pair} {reason}")
            cache.mark_stale(pair, reason)
            results[pair] = False
        except Exception as e:
            logger.warning(f"Market data for {pair} unavailable: {e}")
            cache.mark_stale(pair, str(e))
            results[pair] = False
    return results


class CorrelationSource(ABC):
    """Supplies price correlation between pairs."""

    @abstractmethod
    def correlations(self, pair: str, others: Iterable[str]) -> Dict[str, float]:
        pass


class PandasCorrelationSource(CorrelationSource):
    """Correlation of close-to-close log returns over the cached bars."""

    def __init__(self, cache: MarketDataCache, min_bars: int = 20):
        self.cache = cache
        self.min_bars = min_bars

    def _returns(self, pair: str) -> Optional[pd.Series]:
        snapshot = self.cache.get(pair)
        if snapshot is None or snapshot.ohlcv.empty or "close" not in snapshot.ohlcv:
            return None
        closes = snapshot.ohlcv["close"].astype(float)
        returns = np.log(closes / closes.shift(1)).dropna()
        if len(returns) < self.min_bars:
            return None
        return returns

    def correlations(self, pair: str, others: Iterable[str]) -> Dict[str, float]:
        base = self._returns(pair)
        if base is None:
            return {}
        result = {}
        for other in others:
            if other == pair:
                continue
            series = self._returns(other)
            if series is None:
                continue
            aligned = pd.concat([base, series], axis=1, join="inner").dropna()
            if len(aligned) < self.min_bars:
                continue
            value = aligned.iloc[:, 0].corr(aligned.iloc[:, 1])
            if not np.isnan(value):
                result[other] = float(value)
        return result
