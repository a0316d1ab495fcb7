"""Pytest configuration, fakes and fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pandas as pd
import pytest

from scalping_bot.core.enums import OrderSide, OrderStatus
from scalping_bot.core.models import Order
from scalping_bot.core.state_lock import StateManager
from scalping_bot.data.market import MarketDataSource, MarketDataUnavailable, MarketSnapshot
from scalping_bot.data.repository import InMemoryOrderRepository
from scalping_bot.data.signals import IndicatorSignal, SignalSource, SignalUnavailable
from scalping_bot.execution.emergency import EmergencyStopController
from scalping_bot.execution.executor import OrderExecutor
from scalping_bot.execution.gateway import ExecutionGateway, GatewayReply
from scalping_bot.notifications import NotificationDispatcher, NotificationSink
from scalping_bot.orders.tracker import OrderTracker
from scalping_bot.risk.gate import RiskGate
from scalping_bot.scheduling.scheduler import TaskScheduler


class FakeSignalSource(SignalSource):
    """Signal source driven by test-set values."""

    timeout = 0.5

    def __init__(self, volatility: float = 1.5, loss: float = 0.0):
        self.volatility: Dict[str, float] = {}
        self.default_volatility = volatility
        self.loss = loss
        self.signals: Dict[str, IndicatorSignal] = {}
        self.unavailable_pairs = set()
        self.loss_unavailable = False
        self.signal_delay = 0.0
        self.indicator_calls: List[str] = []
        self.reset_calls = 0

    async def get_volatility(self, pair: str) -> float:
        if pair in self.unavailable_pairs:
            raise SignalUnavailable(f"no volatility for {pair}")
        return self.volatility.get(pair, self.default_volatility)

    async def get_loss_to_date(self) -> float:
        if self.loss_unavailable:
            raise SignalUnavailable("loss feed down")
        return self.loss

    async def get_indicator_signal(self, pair: str, timeframe: str) -> IndicatorSignal:
        self.indicator_calls.append(pair)
        if self.signal_delay:
            await asyncio.sleep(self.signal_delay)
        if pair in self.unavailable_pairs:
            raise SignalUnavailable(f"no signal for {pair}")
        return self.signals.get(pair, IndicatorSignal.none())

    async def reset_daily(self) -> None:
        self.reset_calls += 1
        self.loss = 0.0


class FakeGateway(ExecutionGateway):
    """In-process exchange. Replies are configurable per test."""

    timeout = 0.5

    def __init__(self):
        self.submitted: List[Order] = []
        self.cancelled: List[Order] = []
        self.fill_on_submit = False
        self.fill_price = 100.0
        self.reject_reason: Optional[str] = None
        self.submit_delay = 0.0
        self.cancel_delay = 0.0
        self.reject_cancel = False
        # Refuse cancels without an exchange reference, as real exchanges do
        self.require_exchange_id = False
        self.reports: Dict[str, GatewayReply] = {}
        self._counter = 0

    async def submit(self, order: Order) -> GatewayReply:
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        self.submitted.append(order)
        if self.reject_reason:
            return GatewayReply.reject(self.reject_reason)
        self._counter += 1
        if self.fill_on_submit:
            return GatewayReply.ack(
                f"ex-{self._counter}",
                status=OrderStatus.FILLED,
                filled_quantity=order.quantity,
                average_price=self.fill_price,
            )
        return GatewayReply.ack(f"ex-{self._counter}")

    async def cancel(self, order: Order) -> GatewayReply:
        if self.cancel_delay:
            await asyncio.sleep(self.cancel_delay)
        if self.reject_cancel:
            return GatewayReply.reject("cancel refused")
        if self.require_exchange_id and not order.exchange_order_id:
            return GatewayReply.reject("Order has no exchange reference")
        self.cancelled.append(order)
        return GatewayReply.ack(order.exchange_order_id)

    async def fetch_status(self, order: Order) -> Optional[GatewayReply]:
        return self.reports.get(order.exchange_order_id)


class FakeMarketSource(MarketDataSource):
    timeout = 0.5

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices = dict(prices or {})
        self.down = False

    async def fetch_snapshot(self, pair: str) -> MarketSnapshot:
        if self.down or pair not in self.prices:
            raise MarketDataUnavailable(f"{pair} unavailable")
        return MarketSnapshot(pair=pair, price=self.prices[pair], ohlcv=make_ohlcv([self.prices[pair]] * 30))


class RecordingSink(NotificationSink):
    def __init__(self, failures: int = 0):
        self.events = []
        self.failures = failures
        self.attempts = 0

    async def send(self, event) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("sink down")
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events]


class Clock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def make_ohlcv(closes: List[float]) -> pd.DataFrame:
    index = pd.date_range(start="2024-01-01", periods=len(closes), freq="1min", tz="UTC")
    return pd.DataFrame({
        "open": closes,
        "high": closes,
        "low": closes,
        "close": closes,
        "volume": [1000.0] * len(closes),
    }, index=index)


def make_order(status: OrderStatus = OrderStatus.PENDING, **kwargs) -> Order:
    fields = {"pair": "BTC/USDT", "side": OrderSide.BUY, "quantity": 1.0}
    fields.update(kwargs)
    return Order(status=status, **fields)


@pytest.fixture
def signals():
    return FakeSignalSource()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def state_manager():
    return StateManager()


@pytest.fixture
def repository():
    return InMemoryOrderRepository()


@pytest.fixture
def tracker(repository, state_manager):
    return OrderTracker(repository, state_manager)


@pytest.fixture
def gate(tracker, state_manager):
    return RiskGate(tracker, state_manager)


@pytest.fixture
def notifier(sink):
    return NotificationDispatcher(sink, max_attempts=3, retry_delay=0)


@pytest.fixture
def executor(tracker, gateway, gate, state_manager, notifier):
    return OrderExecutor(tracker, gateway, gate, state_manager, notifier, capital=10000.0)


@pytest.fixture
def scheduler():
    return TaskScheduler()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def controller(gate, executor, scheduler, notifier, clock):
    return EmergencyStopController(
        gate, executor, scheduler, notifier, cooldown_seconds=300.0, clock=clock
    )
