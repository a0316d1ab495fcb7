"""Main scalping bot application."""

import asyncio
import importlib
import logging
import signal
import sys
from functools import partial
from typing import Dict, Optional

from .config import BotConfig, load_config
from .core.state_lock import StateManager
from .data.market import (
    CCXTMarketDataSource, MarketDataCache, MarketDataSource, PandasCorrelationSource
)
from .data.repository import InMemoryOrderRepository, OrderRepository
from .data.signals import SignalSource
from .execution.emergency import EmergencyStopController
from .execution.executor import OrderExecutor
from .execution.gateway import CCXTExecutionGateway, ExecutionGateway
from .notifications import LoggingNotificationSink, NotificationDispatcher, NotificationSink
from .orders.tracker import OrderTracker
from .risk.gate import RiskGate
from .scheduling.scheduler import (
    TaskScheduler, RISK_MONITORING, TRADING_ANALYSIS, MARKET_DATA_COLLECTION, DAILY_RESET
)
from .scheduling.tasks import (
    DailyResetTask, MarketDataTask, RiskMonitoringTask, TradingAnalysisTask, analysis_interval
)

logger = logging.getLogger(__name__)


def setup_logging(config: BotConfig):
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(config.log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )


def load_signal_source(path: str) -> SignalSource:
    """Instantiate a signal source from 'package.module:Factory'."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Signal source must be given as 'module:attribute', got '{path}'")
    factory = getattr(importlib.import_module(module_name), attr)
    source = factory() if callable(factory) else factory
    if not isinstance(source, SignalSource):
        raise TypeError(f"{path} did not produce a SignalSource")
    return source


class ScalpingBot:
    """Wires the components together and owns their lifecycle."""

    def __init__(
        self,
        config: BotConfig,
        signals: SignalSource,
        gateway: Optional[ExecutionGateway] = None,
        market_source: Optional[MarketDataSource] = None,
        repository: Optional[OrderRepository] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self.config = config
        self.signals = signals
        self._running = False
        self._stop_event = asyncio.Event()

        exchange = config.exchange
        self.gateway = gateway or CCXTExecutionGateway(
            exchange.name, exchange.ccxt_options(), timeout=exchange.timeout_seconds
        )
        self.market_source = market_source or CCXTMarketDataSource(
            exchange.name, exchange.ccxt_options(), timeframe=config.timeframe
        )
        self.repository = repository or InMemoryOrderRepository()

        self._init_components(sink or LoggingNotificationSink())
        logger.info(f"Scalping bot initialized for {', '.join(config.pairs)}")

    def _init_components(self, sink: NotificationSink):
        config = self.config
        self.state_manager = StateManager()
        self.notifier = NotificationDispatcher(sink, max_attempts=config.notification_attempts)
        self.tracker = OrderTracker(self.repository, self.state_manager)
        self.gate = RiskGate(
            self.tracker,
            self.state_manager,
            risk_limits=config.resolved_risk_limits(),
            daily_loss_limit_pct=config.daily_loss_limit_pct,
            correlation_ceiling=config.correlation_ceiling,
            max_snapshot_age_seconds=config.max_risk_snapshot_age_seconds,
        )
        self.executor = OrderExecutor(
            self.tracker, self.gateway, self.gate, self.state_manager, self.notifier, config.capital
        )
        self.scheduler = TaskScheduler()
        self.controller = EmergencyStopController(
            self.gate,
            self.executor,
            self.scheduler,
            self.notifier,
            cooldown_seconds=config.emergency.cooldown_seconds,
        )
        self.cache = MarketDataCache(max_age_seconds=config.cadence.market_data_seconds * 3)

        self.risk_task = RiskMonitoringTask(
            self.signals, self.gate, self.controller, self.notifier, config.pairs
        )
        self.analysis_task = TradingAnalysisTask(
            self.signals,
            self.gate,
            self.executor,
            self.controller,
            self.tracker,
            self.cache,
            self.notifier,
            config.pairs,
            correlation_source=PandasCorrelationSource(self.cache),
            timeframe=config.timeframe,
            size_cap_pct=config.size_cap_pct,
        )
        self.market_task = MarketDataTask(
            self.market_source,
            self.cache,
            self.notifier,
            config.pairs,
            on_connectivity_lost=self.controller.connectivity_lost,
            max_consecutive_failures=config.emergency.max_consecutive_data_failures,
        )
        self.daily_task = DailyResetTask(self.signals, self.gate, self.tracker, self.risk_task)

        cadence = config.cadence
        self.scheduler.add_periodic(RISK_MONITORING, self.risk_task.run, cadence.risk_monitoring_seconds)
        self.scheduler.add_periodic(
            TRADING_ANALYSIS,
            self.analysis_task.run,
            partial(analysis_interval, cadence.trading_analysis_seconds, self.gate),
        )
        self.scheduler.add_periodic(MARKET_DATA_COLLECTION, self.market_task.run, cadence.market_data_seconds)
        self.scheduler.add_daily(DAILY_RESET, self.daily_task.run, cadence.daily_reset_at)

    async def start(self):
        """Run until ``stop`` is called."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()

        restored = await self.tracker.load_active()
        if restored:
            logger.warning(f"Resuming with {restored} active orders from a previous run")

        # Prime market data and the risk snapshot before analysis can run.
        await self.scheduler.trigger(MARKET_DATA_COLLECTION)
        await self.scheduler.trigger(RISK_MONITORING)
        await self.scheduler.start()
        logger.info("Scalping bot started")
        await self._stop_event.wait()

    async def stop(self):
        if not self._running:
            return
        self._running = False
        logger.info("Stopping scalping bot...")
        await self.scheduler.stop()
        await self.notifier.drain()
        for closer in (self.gateway.close, self.market_source.close):
            try:
                await closer()
            except Exception as e:
                logger.error(f"Error closing connection: {e}")
        self._stop_event.set()
        logger.info("Scalping bot stopped")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        asyncio.create_task(self.stop())

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def get_status(self) -> Dict:
        """Get bot status."""
        snapshot = self.gate.snapshot
        return {
            'running': self._running,
            'emergency': self.controller.get_status(),
            'risk': {
                'level': snapshot.level.value,
                'daily_loss_pct': snapshot.daily_loss_pct,
                'volatility_pct': snapshot.volatility_pct,
                'open_positions': self.tracker.open_position_count(),
                'classified_at': snapshot.classified_at,
                'requires_immediate_action': snapshot.requires_immediate_action,
            },
            'tasks': self.scheduler.get_status(),
            'active_orders': len(self.tracker.active_orders()),
            'realized_pnl': self.tracker.realized_pnl,
            'notifications': self.notifier.get_stats(),
        }


async def main():
    """Main entry point."""
    config = load_config()
    setup_logging(config)

    if not config.signal_source:
        logger.error("SIGNAL_SOURCE is not set; nothing to trade on")
        return

    bot = ScalpingBot(config, load_signal_source(config.signal_source))
    bot.install_signal_handlers()

    try:
        await bot.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
    finally:
        await bot.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
