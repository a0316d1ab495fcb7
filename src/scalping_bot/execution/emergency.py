"""Emergency stop: circuit breaker over trading and open orders."""

from datetime import datetime
from typing import Callable, Dict, Optional
import logging

from ..core.enums import EmergencyState, RiskLevel
from ..core.models import OrderResult, RiskState, utcnow
from ..notifications import EmergencyStop, NotificationDispatcher
from ..risk.gate import RiskGate
from ..scheduling.scheduler import (
    TaskScheduler, RISK_MONITORING, TRADING_ANALYSIS, MARKET_DATA_COLLECTION
)
from .executor import OrderExecutor

logger = logging.getLogger(__name__)

# Tasks halted while stopped. Risk monitoring keeps running.
SUSPENDED_TASKS = (TRADING_ANALYSIS, MARKET_DATA_COLLECTION)


class EmergencyStopActive(Exception):
    """Raised when a new position is requested while the emergency stop is engaged."""
    pass


class EmergencyStopController:
    """
    NORMAL/STOPPED circuit breaker.

    Enters STOPPED on a CRITICAL risk level, on an immediate-action flag seen
    on two consecutive classifications, or on lost exchange connectivity.
    Leaving STOPPED always takes an explicit reset once risk has been at
    HIGH or better for the cool-down period.
    """

    def __init__(
        self,
        gate: RiskGate,
        executor: OrderExecutor,
        scheduler: TaskScheduler,
        notifier: NotificationDispatcher,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gate = gate
        self.executor = executor
        self.scheduler = scheduler
        self.notifier = notifier
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock

        self._state = EmergencyState.NORMAL
        self._reason: Optional[str] = None
        self._stopped_at: Optional[datetime] = None
        self._calm_since: Optional[datetime] = None
        self._immediate_streak = 0
        self._last_assessed: Optional[datetime] = None
        logger.info(f"Emergency stop controller initialized (cool-down {cooldown_seconds}s)")

    @property
    def state(self) -> EmergencyState:
        return self._state

    @property
    def is_stopped(self) -> bool:
        return self._state is EmergencyState.STOPPED

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def assess(self, snapshot: Optional[RiskState] = None, now: Optional[datetime] = None) -> EmergencyState:
        """Look at a risk snapshot; called once per risk-monitoring cycle."""
        snapshot = snapshot or self.gate.snapshot
        now = now or self.clock()
        if snapshot.classified_at is None or snapshot.classified_at == self._last_assessed:
            return self._state
        self._last_assessed = snapshot.classified_at

        if snapshot.level <= RiskLevel.HIGH:
            if self._calm_since is None:
                self._calm_since = now
        else:
            self._calm_since = None

        if snapshot.requires_immediate_action:
            self._immediate_streak += 1
        else:
            self._immediate_streak = 0

        if not self.is_stopped:
            if snapshot.level is RiskLevel.CRITICAL:
                await self.stop(f"Risk level CRITICAL (daily loss {snapshot.daily_loss_pct:.2f}%)")
            elif self._immediate_streak > 1:
                await self.stop(
                    f"Immediate action required for {self._immediate_streak} consecutive cycles "
                    f"at {snapshot.level.value}"
                )
        return self._state

    async def connectivity_lost(self, detail: str) -> Dict[str, OrderResult]:
        return await self.stop(f"Exchange connectivity lost: {detail}")

    async def stop(self, reason: str) -> Dict[str, OrderResult]:
        """Engage the stop and unwind.

        Trading tasks are suspended, every active order is cancelled, then
        every position still holding a filled quantity is closed. Returns
        the cancellation results.
        """
        if self.is_stopped:
            logger.info(f"Emergency stop already active, ignoring: {reason}")
            return {}

        # Flip first so that concurrent proposals are vetoed from here on.
        self._state = EmergencyState.STOPPED
        self._reason = reason
        self._stopped_at = self.clock()
        self._calm_since = None
        logger.critical(f"EMERGENCY STOP: {reason}")

        for name in SUSPENDED_TASKS:
            if self.scheduler.has_task(name):
                self.scheduler.disable(name)

        results = await self.executor.cancel_all_active(f"emergency stop: {reason}")
        cancelled = [oid for oid, r in results.items() if r.applied]
        failed = [oid for oid, r in results.items() if not r.applied]
        if failed:
            logger.error(f"Emergency stop could not cancel {len(failed)} orders: {failed}")

        closes = await self.executor.close_all_positions(f"emergency stop: {reason}")
        closed = [oid for oid, r in closes.items() if r.applied]
        failed_closes = [oid for oid, r in closes.items() if not r.applied]
        if failed_closes:
            logger.error(f"Emergency stop could not close {len(failed_closes)} positions: {failed_closes}")
        logger.critical(
            f"EMERGENCY STOP COMPLETE: {len(cancelled)}/{len(results)} orders cancelled, "
            f"{len(closed)}/{len(closes)} positions closed"
        )

        self.notifier.publish(EmergencyStop(
            reason=reason,
            cancelled_order_ids=cancelled,
            failed_order_ids=failed,
            closed_position_ids=closed,
            failed_close_ids=failed_closes,
        ))
        return results

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    async def reset(self, confirmed: bool, now: Optional[datetime] = None) -> bool:
        """Return to NORMAL on an operator's confirmation.

        Reclassifies first, then requires HIGH or better held for the cool-down.
        """
        if not self.is_stopped:
            logger.info("Emergency reset requested while not stopped")
            return False
        if not confirmed:
            logger.warning("Emergency reset refused: confirmation missing")
            return False

        if self.scheduler.has_task(RISK_MONITORING):
            await self.scheduler.trigger(RISK_MONITORING, force=True)

        now = now or self.clock()
        level = self.gate.snapshot.level
        if level > RiskLevel.HIGH:
            logger.warning(f"Emergency reset refused: risk level is {level.value}")
            return False
        calm_for = (now - self._calm_since).total_seconds() if self._calm_since else 0.0
        if self._calm_since is None or calm_for < self.cooldown_seconds:
            logger.warning(
                f"Emergency reset refused: calm for {calm_for:.0f}s, "
                f"cool-down is {self.cooldown_seconds:.0f}s"
            )
            return False

        self._state = EmergencyState.NORMAL
        self._reason = None
        self._stopped_at = None
        self._immediate_streak = 0
        for name in SUSPENDED_TASKS:
            if self.scheduler.has_task(name):
                self.scheduler.enable(name)
        logger.warning(f"Emergency stop reset, trading resumed at {level.value}")
        return True

    # ------------------------------------------------------------------
    # Checks for new positions
    # ------------------------------------------------------------------

    def veto_reason(self) -> Optional[str]:
        if self.is_stopped:
            return f"Emergency stop active: {self._reason}"
        return None

    def ensure_trading_allowed(self) -> None:
        reason = self.veto_reason()
        if reason:
            raise EmergencyStopActive(reason)

    def get_status(self) -> Dict:
        return {
            "state": self._state.value,
            "reason": self._reason,
            "stopped_at": self._stopped_at,
            "calm_since": self._calm_since,
            "immediate_action_streak": self._immediate_streak,
        }
