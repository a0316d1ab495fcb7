"""Signal source contract: volatility, loss and indicator decisions."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional
import asyncio

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.enums import OrderSide


class SignalUnavailable(Exception):
    """Raised when a signal cannot be produced this cycle."""
    pass


class SignalAction(str, Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    NONE = "NONE"


class IndicatorSignal(BaseModel):
    """Decision produced by the strategy/indicator collaborator for one pair."""

    model_config = ConfigDict(frozen=True)

    action: SignalAction = SignalAction.NONE
    side: Optional[OrderSide] = None
    size_pct: Optional[float] = Field(default=None, gt=0, description="Requested size, % of capital")
    order_id: Optional[str] = Field(default=None, description="Opening order to close")

    @model_validator(mode="after")
    def _check_payload(self):
        if self.action is SignalAction.OPEN and self.side is None:
            raise ValueError("OPEN signal requires a side")
        if self.action is SignalAction.CLOSE and not self.order_id:
            raise ValueError("CLOSE signal requires an order id")
        return self

    @classmethod
    def open(cls, side: OrderSide, size_pct: Optional[float] = None) -> "IndicatorSignal":
        return cls(action=SignalAction.OPEN, side=side, size_pct=size_pct)

    @classmethod
    def close(cls, order_id: str) -> "IndicatorSignal":
        return cls(action=SignalAction.CLOSE, order_id=order_id)

    @classmethod
    def none(cls) -> "IndicatorSignal":
        return cls()


class SignalSource(ABC):
    """Abstract source of already-computed market and account signals.

    ``timeout`` bounds every call made through ``fetch_*`` below.
    """

    timeout: float = 5.0

    @abstractmethod
    async def get_volatility(self, pair: str) -> float:
        """Current volatility (ATR %) for a pair."""
        pass

    @abstractmethod
    async def get_loss_to_date(self) -> float:
        """Loss since the last daily reset, % of capital."""
        pass

    @abstractmethod
    async def get_indicator_signal(self, pair: str, timeframe: str) -> IndicatorSignal:
        """Strategy decision for a pair."""
        pass

    async def reset_daily(self) -> None:
        """Start a new loss accounting day."""
        pass


async def _bounded(source: SignalSource, coro, what: str):
    try:
        return await asyncio.wait_for(coro, timeout=source.timeout)
    except SignalUnavailable:
        raise
    except asyncio.TimeoutError:
        raise SignalUnavailable(f"{what} timed out after {source.timeout}s")
    except Exception as e:
        raise SignalUnavailable(f"{what} failed: {e}") from e


async def fetch_volatility(source: SignalSource, pair: str) -> float:
    return await _bounded(source, source.get_volatility(pair), f"Volatility for {pair}")


async def fetch_loss_to_date(source: SignalSource) -> float:
    return await _bounded(source, source.get_loss_to_date(), "Loss to date")


async def fetch_indicator_signal(source: SignalSource, pair: str, timeframe: str) -> IndicatorSignal:
    return await _bounded(
        source, source.get_indicator_signal(pair, timeframe), f"Indicator signal for {pair}"
    )


async def request_daily_reset(source: SignalSource) -> None:
    await _bounded(source, source.reset_daily(), "Daily loss reset")
