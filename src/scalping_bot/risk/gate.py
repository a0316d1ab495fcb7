"""Risk gate: the single authority on whether an action is allowed right now."""

from datetime import datetime
from typing import Mapping, Optional, Union
import logging

from ..core.enums import RiskLevel, RiskLimits, DEFAULT_RISK_LIMITS
from ..core.models import (
    OpenPosition, RiskDecision, RiskState, TransitionRequest, utcnow
)
from ..core.state_lock import StateManager, RISK_STATE_LOCK
from ..orders.state_machine import can_transition
from ..orders.tracker import OrderTracker
from .classifier import effective_level

logger = logging.getLogger(__name__)

Proposal = Union[OpenPosition, TransitionRequest]


class RiskDenied(Exception):
    """Raised by a gate rule when an action is blocked by the current risk state."""
    pass


class RiskGate:
    """
    Holds the current RiskState snapshot and checks proposed actions against it.

    ``refresh`` and ``reset_daily_loss`` are the only writers of the snapshot.
    Each write builds a new immutable RiskState and swaps it in with one
    assignment; readers always get a complete snapshot.
    """

    def __init__(
        self,
        tracker: OrderTracker,
        state_manager: StateManager,
        risk_limits: Optional[Mapping[RiskLevel, RiskLimits]] = None,
        daily_loss_limit_pct: float = 2.0,
        correlation_ceiling: float = 0.8,
        max_snapshot_age_seconds: float = 15.0,
    ):
        self.tracker = tracker
        self.state_manager = state_manager
        self.risk_limits = dict(DEFAULT_RISK_LIMITS)
        if risk_limits:
            self.risk_limits.update(risk_limits)
        self.daily_loss_limit_pct = daily_loss_limit_pct
        self.correlation_ceiling = correlation_ceiling
        self.max_snapshot_age_seconds = max_snapshot_age_seconds
        self._state = RiskState()
        self._reset_generation = 0
        logger.info(
            f"Risk gate initialized (daily loss limit {daily_loss_limit_pct}%, "
            f"correlation ceiling {correlation_ceiling})"
        )

    # ------------------------------------------------------------------
    # Snapshot access
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> RiskState:
        return self._state

    def limits_for(self, level: RiskLevel) -> RiskLimits:
        return self.risk_limits[level]

    @property
    def current_limits(self) -> RiskLimits:
        return self.limits_for(self._state.level)

    def is_trading_allowed(self) -> bool:
        return self._state.is_trading_allowed

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, proposal: Proposal, now: Optional[datetime] = None) -> RiskDecision:
        """Approve or deny a proposed action against the current snapshot."""
        if isinstance(proposal, TransitionRequest):
            return self._evaluate_transition(proposal)
        if isinstance(proposal, OpenPosition):
            return self._evaluate_open(proposal, now or utcnow())
        raise TypeError(f"Unsupported proposal type: {type(proposal).__name__}")

    def _evaluate_transition(self, request: TransitionRequest) -> RiskDecision:
        # Risk never blocks closing or cancelling; only the lifecycle table applies.
        order = request.order
        if can_transition(order.status, request.target):
            return RiskDecision(approved=True, level=self._state.level)
        reason = f"Order {order.id}: {order.status.value} -> {request.target.value} is not allowed"
        return RiskDecision(approved=False, reason=reason, level=self._state.level)

    def _evaluate_open(self, proposal: OpenPosition, now: datetime) -> RiskDecision:
        state = self._state
        try:
            self._check_fresh(state, now)
            self._check_level(state)
            limits = self.limits_for(state.level)
            self._check_position_count(limits)
            self._check_position_size(proposal, limits)
            self._check_correlation(proposal)
        except RiskDenied as e:
            logger.warning(
                f"Open {proposal.side.value} {proposal.pair} ({proposal.size_pct}%) denied: {e}"
            )
            return RiskDecision(approved=False, reason=str(e), level=state.level)

        logger.info(
            f"Open {proposal.side.value} {proposal.pair} ({proposal.size_pct}%) approved "
            f"at {state.level.log_label}"
        )
        return RiskDecision(approved=True, level=state.level)

    def _check_fresh(self, state: RiskState, now: datetime):
        age = state.age_seconds(now)
        if age is None:
            raise RiskDenied("Risk state has not been classified yet")
        if age > self.max_snapshot_age_seconds:
            raise RiskDenied(
                f"Risk state is stale ({age:.1f}s old, max {self.max_snapshot_age_seconds}s)"
            )

    def _check_level(self, state: RiskState):
        if not state.level.is_trading_allowed:
            raise RiskDenied(f"Trading is forbidden at {state.level.value}")

    def _check_position_count(self, limits: RiskLimits):
        count = self.tracker.open_position_count()
        if count >= limits.max_simultaneous_positions:
            raise RiskDenied(
                f"Max positions reached ({count}/{limits.max_simultaneous_positions})"
            )

    def _check_position_size(self, proposal: OpenPosition, limits: RiskLimits):
        if proposal.size_pct > limits.max_position_size_pct:
            raise RiskDenied(
                f"Position size {proposal.size_pct}% exceeds maximum {limits.max_position_size_pct}%"
            )

    def _check_correlation(self, proposal: OpenPosition):
        for held in self.tracker.open_pairs():
            if held == proposal.pair:
                continue
            correlation = proposal.correlations.get(held)
            if correlation is not None and correlation > self.correlation_ceiling:
                raise RiskDenied(
                    f"Correlation {correlation:.2f} with {held} exceeds ceiling "
                    f"{self.correlation_ceiling:.2f}"
                )

    # ------------------------------------------------------------------
    # Snapshot writers
    # ------------------------------------------------------------------

    @property
    def reset_generation(self) -> int:
        """Incremented by every daily reset."""
        return self._reset_generation

    async def refresh(
        self,
        volatility_pct: Optional[float],
        loss_pct: Optional[float],
        open_position_count: Optional[int] = None,
        generation: Optional[int] = None,
    ) -> RiskState:
        """Reclassify from fresh signals and replace the snapshot.

        ``generation`` is the ``reset_generation`` read before ``loss_pct``
        was fetched. If a daily reset happened since, the loss figure
        belongs to the previous day and is replaced by zero.
        """
        if open_position_count is None:
            open_position_count = self.tracker.open_position_count()

        async with self.state_manager.lock_state(RISK_STATE_LOCK):
            previous = self._state
            if generation is not None and generation != self._reset_generation:
                logger.info("Daily reset happened during this cycle, ignoring pre-reset loss")
                loss_pct = 0.0
            daily_loss = abs(loss_pct) if loss_pct is not None else previous.daily_loss_pct
            level, by_volatility, by_loss = effective_level(
                volatility_pct, loss_pct, self.daily_loss_limit_pct
            )
            state = RiskState(
                level=level,
                volatility_level=by_volatility,
                loss_level=by_loss,
                volatility_pct=volatility_pct,
                daily_loss_pct=daily_loss,
                open_position_count=open_position_count,
                classified_at=utcnow(),
                requires_immediate_action=level.requires_immediate_action,
            )
            self._state = state

        if level is not previous.level:
            log = logger.warning if level.requires_immediate_action else logger.info
            log(
                f"Risk level {previous.level.value} -> {level.value} "
                f"(volatility {by_volatility.value}, loss {by_loss.value}): {level.recommended_action}"
            )
        return state

    async def reset_daily_loss(self) -> RiskState:
        """Zero the daily loss field and reclassify with the last known volatility."""
        async with self.state_manager.lock_state(RISK_STATE_LOCK):
            previous = self._state
            self._reset_generation += 1
            level, by_volatility, by_loss = effective_level(
                previous.volatility_pct, 0.0, self.daily_loss_limit_pct
            )
            state = previous.model_copy(update={
                "level": level,
                "volatility_level": by_volatility,
                "loss_level": by_loss,
                "daily_loss_pct": 0.0,
                "requires_immediate_action": level.requires_immediate_action,
            })
            self._state = state
        logger.info(f"Daily loss reset (was {previous.daily_loss_pct:.2f}%), level {level.value}")
        return state
