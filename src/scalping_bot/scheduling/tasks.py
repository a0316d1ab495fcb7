"""Bodies of the four scheduled tasks."""

from typing import Awaitable, Callable, Dict, List, Optional
import asyncio
import logging

from ..core.enums import RiskLevel
from ..core.models import OpenPosition, OrderResult
from ..data.market import CorrelationSource, MarketDataCache, MarketDataSource, collect
from ..data.signals import (
    SignalAction, SignalSource, SignalUnavailable,
    fetch_indicator_signal, fetch_loss_to_date, fetch_volatility, request_daily_reset,
)
from ..execution.emergency import EmergencyStopActive, EmergencyStopController
from ..execution.executor import OrderExecutor
from ..notifications import CollaboratorUnavailable, DailyLimitReached, NotificationDispatcher
from ..orders.tracker import OrderTracker
from ..risk.gate import RiskGate
from .scheduler import RISK_MONITORING, TRADING_ANALYSIS, MARKET_DATA_COLLECTION, DAILY_RESET

logger = logging.getLogger(__name__)


def analysis_interval(default_seconds: float, gate: RiskGate) -> float:
    """Next trading-analysis interval, read from the current risk snapshot."""
    level_seconds = gate.current_limits.analysis_interval_seconds
    if level_seconds <= 0:
        return default_seconds
    return min(default_seconds, level_seconds)


class RiskMonitoringTask:
    """Pulls volatility and loss, refreshes the gate, then lets the emergency stop reassess."""

    def __init__(
        self,
        signals: SignalSource,
        gate: RiskGate,
        controller: EmergencyStopController,
        notifier: NotificationDispatcher,
        pairs: List[str],
    ):
        self.signals = signals
        self.gate = gate
        self.controller = controller
        self.notifier = notifier
        self.pairs = list(pairs)
        self._daily_limit_notified = False

    def _unavailable(self, detail: str, pair: Optional[str] = None):
        logger.warning(f"Risk monitoring: {detail}")
        self.notifier.publish(CollaboratorUnavailable(task=RISK_MONITORING, detail=detail, pair=pair))

    async def _volatility(self) -> Optional[float]:
        readings = await asyncio.gather(
            *(fetch_volatility(self.signals, pair) for pair in self.pairs),
            return_exceptions=True,
        )
        values = []
        for pair, reading in zip(self.pairs, readings):
            if isinstance(reading, SignalUnavailable):
                self._unavailable(str(reading), pair)
            elif isinstance(reading, BaseException):
                raise reading
            else:
                values.append(reading)
        # Portfolio risk follows the most volatile pair.
        return max(values) if values else None

    async def run(self) -> None:
        generation = self.gate.reset_generation
        volatility = await self._volatility()
        try:
            loss = await fetch_loss_to_date(self.signals)
        except SignalUnavailable as e:
            # Keep the previous snapshot; it ages out and blocks new positions.
            self._unavailable(str(e))
            return

        state = await self.gate.refresh(volatility, loss, generation=generation)

        if state.loss_level is RiskLevel.CRITICAL and not self._daily_limit_notified:
            self._daily_limit_notified = True
            logger.warning(
                f"Daily loss limit reached: {state.daily_loss_pct:.2f}% "
                f"of {self.gate.daily_loss_limit_pct:.2f}%"
            )
            self.notifier.publish(DailyLimitReached(
                daily_loss_pct=state.daily_loss_pct, limit_pct=self.gate.daily_loss_limit_pct
            ))

        await self.controller.assess(state)

    def rearm_daily_limit(self) -> None:
        self._daily_limit_notified = False


class TradingAnalysisTask:
    """Asks the strategy for a decision per pair and routes it through the gate."""

    def __init__(
        self,
        signals: SignalSource,
        gate: RiskGate,
        executor: OrderExecutor,
        controller: EmergencyStopController,
        tracker: OrderTracker,
        cache: MarketDataCache,
        notifier: NotificationDispatcher,
        pairs: List[str],
        correlation_source: Optional[CorrelationSource] = None,
        timeframe: str = "1m",
        size_cap_pct: float = 5.0,
    ):
        self.signals = signals
        self.gate = gate
        self.executor = executor
        self.controller = controller
        self.tracker = tracker
        self.cache = cache
        self.notifier = notifier
        self.pairs = list(pairs)
        self.correlation_source = correlation_source
        self.timeframe = timeframe
        self.size_cap_pct = size_cap_pct

    async def run(self) -> Dict[str, Optional[OrderResult]]:
        await self.executor.sync_active_orders()
        outcomes = await asyncio.gather(
            *(self.analyze_pair(pair) for pair in self.pairs), return_exceptions=True
        )
        results = {}
        for pair, outcome in zip(self.pairs, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Analysis of {pair} failed: {outcome}")
                results[pair] = None
            else:
                results[pair] = outcome
        return results

    async def analyze_pair(self, pair: str) -> Optional[OrderResult]:
        if self.controller.is_stopped:
            return None

        price = self.cache.price(pair)
        if price is not None:
            await self.executor.check_exit_levels(pair, price)

        try:
            signal = await fetch_indicator_signal(self.signals, pair, self.timeframe)
        except SignalUnavailable as e:
            logger.warning(f"No signal for {pair} this cycle: {e}")
            self.notifier.publish(CollaboratorUnavailable(task=TRADING_ANALYSIS, detail=str(e), pair=pair))
            return None

        if signal.action is SignalAction.CLOSE:
            return await self.executor.close_position(signal.order_id, "strategy close signal")
        if signal.action is SignalAction.OPEN:
            return await self._open(pair, signal.side, signal.size_pct, price)
        return None

    async def _open(self, pair, side, size_pct, price) -> OrderResult:
        try:
            self.controller.ensure_trading_allowed()
        except EmergencyStopActive as e:
            return OrderResult.denied(str(e))

        if price is None:
            logger.warning(f"Not opening {pair}: market data missing or stale")
            return OrderResult.failed(f"No fresh price for {pair}")

        if size_pct is None:
            limits = self.gate.current_limits
            size_pct = side.recommended_position_size(limits.max_position_size_pct, self.size_cap_pct)
        if size_pct <= 0:
            return OrderResult.denied(f"No position size allowed at {self.gate.snapshot.level.value}")

        correlations = {}
        if self.correlation_source is not None:
            correlations = self.correlation_source.correlations(pair, self.tracker.open_pairs())

        proposal = OpenPosition(pair=pair, side=side, size_pct=size_pct, correlations=correlations)
        return await self.executor.open_position(proposal, price, veto=self.controller.veto_reason)


class MarketDataTask:
    """Refreshes the market data cache. Failures only stale-mark entries."""

    def __init__(
        self,
        source: MarketDataSource,
        cache: MarketDataCache,
        notifier: NotificationDispatcher,
        pairs: List[str],
        on_connectivity_lost: Optional[Callable[[str], Awaitable]] = None,
        max_consecutive_failures: int = 3,
    ):
        self.source = source
        self.cache = cache
        self.notifier = notifier
        self.pairs = list(pairs)
        self.on_connectivity_lost = on_connectivity_lost
        self.max_consecutive_failures = max_consecutive_failures
        self.consecutive_failures = 0

    async def run(self) -> Dict[str, bool]:
        results = await collect(self.source, self.cache, self.pairs)
        failed = [pair for pair, ok in results.items() if not ok]
        for pair in failed:
            snapshot = self.cache.get(pair)
            detail = snapshot.stale_reason if snapshot and snapshot.stale_reason else "market data unavailable"
            self.notifier.publish(CollaboratorUnavailable(task=MARKET_DATA_COLLECTION, detail=detail, pair=pair))

        if results and len(failed) == len(results):
            self.consecutive_failures += 1
            logger.error(f"Market data collection failed for all pairs ({self.consecutive_failures} in a row)")
        else:
            self.consecutive_failures = 0

        if self.consecutive_failures >= self.max_consecutive_failures and self.on_connectivity_lost:
            self.consecutive_failures = 0
            await self.on_connectivity_lost(
                f"market data unavailable for {self.max_consecutive_failures} consecutive cycles"
            )
        return results


class DailyResetTask:
    """Starts a new trading day: loss field, P&L counters and limit notification."""

    def __init__(
        self,
        signals: SignalSource,
        gate: RiskGate,
        tracker: OrderTracker,
        risk_task: RiskMonitoringTask,
    ):
        self.signals = signals
        self.gate = gate
        self.tracker = tracker
        self.risk_task = risk_task

    async def run(self) -> None:
        logger.info("Daily reset started")
        try:
            await request_daily_reset(self.signals)
        except SignalUnavailable as e:
            logger.error(f"{DAILY_RESET}: signal source did not reset: {e}")

        await self.gate.reset_daily_loss()
        self.tracker.reset_daily_counters()
        self.risk_task.rearm_daily_limit()
        logger.info("Daily reset complete")
