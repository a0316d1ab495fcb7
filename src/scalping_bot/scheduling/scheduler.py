"""Multi-cadence task scheduler."""

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Set, Union
import asyncio
import logging

from ..core.models import utcnow

logger = logging.getLogger(__name__)

RISK_MONITORING = "risk-monitoring"
TRADING_ANALYSIS = "trading-analysis"
MARKET_DATA_COLLECTION = "market-data-collection"
DAILY_RESET = "daily-reset"

TaskBody = Callable[[], Awaitable[None]]
Interval = Union[float, Callable[[], float]]

# Daily targets closer than this are treated as already reached.
DAILY_SLACK = timedelta(seconds=1)


class RunResult(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    DISABLED = "disabled"
    FAILED = "failed"


def seconds_until(at: time, now: datetime) -> float:
    """Seconds from ``now`` to the next occurrence of ``at`` (UTC wall clock)."""
    target = datetime.combine(now.date(), at, tzinfo=now.tzinfo)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


@dataclass
class ScheduledTask:
    """A named unit of work and its cadence."""
    name: str
    body: TaskBody
    interval: Optional[Interval] = None
    daily_at: Optional[time] = None
    enabled: bool = True
    running: bool = False
    runs: int = 0
    skips: int = 0
    failures: int = 0
    last_started: Optional[datetime] = None
    last_finished: Optional[datetime] = None
    last_error: Optional[str] = None
    last_delay: Optional[float] = None

    def next_delay(self, now: datetime) -> float:
        if self.daily_at is not None:
            # An early wake-up counts as the occurrence it woke for
            return seconds_until(self.daily_at, now + DAILY_SLACK) + DAILY_SLACK.total_seconds()
        interval = self.interval() if callable(self.interval) else self.interval
        return max(0.01, float(interval))


class TaskScheduler:
    """
    Runs named tasks on independent cadences.

    A task never overlaps with itself: a tick that finds the previous run
    still in progress is skipped, not queued. Disabled tasks keep their
    timers but do not run.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._tasks: Dict[str, ScheduledTask] = {}
        self._loops: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._running = False
        logger.info("Task scheduler initialized")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_periodic(self, name: str, body: TaskBody, interval: Interval, enabled: bool = True) -> ScheduledTask:
        """Register a task run every ``interval`` seconds; a callable interval is re-read each cycle."""
        return self._add(ScheduledTask(name=name, body=body, interval=interval, enabled=enabled))

    def add_daily(self, name: str, body: TaskBody, at: time, enabled: bool = True) -> ScheduledTask:
        """Register a task run once a day at ``at`` (UTC)."""
        return self._add(ScheduledTask(name=name, body=body, daily_at=at, enabled=enabled))

    def _add(self, task: ScheduledTask) -> ScheduledTask:
        if task.name in self._tasks:
            raise ValueError(f"Task '{task.name}' is already registered")
        self._tasks[task.name] = task
        if self._running:
            self._loops[task.name] = asyncio.create_task(self._run_loop(task))
        return task

    def has_task(self, name: str) -> bool:
        return name in self._tasks

    def get_task(self, name: str) -> ScheduledTask:
        try:
            return self._tasks[name]
        except KeyError:
            raise KeyError(f"Unknown task '{name}'") from None

    def enable(self, name: str) -> None:
        task = self.get_task(name)
        if not task.enabled:
            task.enabled = True
            logger.info(f"Task '{name}' enabled")

    def disable(self, name: str) -> None:
        task = self.get_task(name)
        if task.enabled:
            task.enabled = False
            logger.warning(f"Task '{name}' disabled")

    def is_enabled(self, name: str) -> bool:
        return self.get_task(name).enabled

    def is_running(self, name: str) -> bool:
        return self.get_task(name).running

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def trigger(self, name: str, force: bool = False) -> RunResult:
        """Run a task now and wait for it, unless it is already running.

        ``force`` runs a disabled task.
        """
        task = self.get_task(name)
        if not task.enabled and not force:
            return RunResult.DISABLED
        if task.running:
            task.skips += 1
            logger.info(f"Task '{name}' still running, skipping this invocation")
            return RunResult.SKIPPED

        # No await between the check above and this flag.
        task.running = True
        task.last_started = self.clock()
        try:
            await task.body()
            task.runs += 1
            task.last_error = None
            return RunResult.COMPLETED
        except asyncio.CancelledError:
            logger.warning(f"Task '{name}' cancelled")
            raise
        except Exception as e:
            task.failures += 1
            task.last_error = str(e)
            logger.error(f"Task '{name}' failed: {e}", exc_info=True)
            return RunResult.FAILED
        finally:
            task.running = False
            task.last_finished = self.clock()

    def _dispatch(self, task: ScheduledTask) -> None:
        run = asyncio.create_task(self.trigger(task.name))
        self._inflight.add(run)
        run.add_done_callback(self._inflight.discard)

    async def _run_loop(self, task: ScheduledTask):
        while self._running:
            try:
                delay = task.next_delay(self.clock())
            except Exception as e:
                logger.error(f"Could not compute next delay for '{task.name}': {e}")
                delay = 1.0
            task.last_delay = delay
            await asyncio.sleep(delay)
            if not self._running:
                break
            if task.enabled:
                self._dispatch(task)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for task in self._tasks.values():
            self._loops[task.name] = asyncio.create_task(self._run_loop(task))
        logger.info(f"Scheduler started with {len(self._tasks)} tasks: {', '.join(self._tasks)}")

    async def stop(self, grace_seconds: float = 10.0) -> None:
        """Stop timers, then give in-flight runs ``grace_seconds`` to finish."""
        self._running = False
        for loop in self._loops.values():
            loop.cancel()
        await asyncio.gather(*self._loops.values(), return_exceptions=True)
        self._loops.clear()

        if self._inflight:
            done, pending = await asyncio.wait(set(self._inflight), timeout=grace_seconds)
            for run in pending:
                run.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(f"Cancelled {len(pending)} task runs still active after {grace_seconds}s")
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    def get_status(self) -> Dict[str, Dict]:
        return {
            name: {
                "enabled": t.enabled,
                "running": t.running,
                "runs": t.runs,
                "skips": t.skips,
                "failures": t.failures,
                "last_started": t.last_started,
                "last_finished": t.last_finished,
                "last_error": t.last_error,
                "next_delay": t.last_delay,
            }
            for name, t in self._tasks.items()
        }
