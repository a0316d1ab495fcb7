"""Order execution: opening, closing and cancelling through the gateway."""

from typing import Callable, Dict, List, Optional, Set
import asyncio
import logging

from ..core.enums import OrderStatus
from ..core.models import OpenPosition, Order, OrderResult, TransitionRequest
from ..core.state_lock import StateManager, POSITION_RESERVATION_LOCK
from ..notifications import (
    CollaboratorUnavailable, NotificationDispatcher, OrderClosed, OrderOpened, StopLossTriggered
)
from ..orders.tracker import OrderTracker
from ..risk.gate import RiskGate
from .gateway import ExecutionGateway, ExecutionTimeout

logger = logging.getLogger(__name__)

# Returns a reason when new positions must not be opened.
Veto = Callable[[], Optional[str]]

# Task name on gateway failure notifications.
ORDER_EXECUTION = "order-execution"


class OrderExecutor:
    """
    Turns approved decisions into orders and drives them through the gateway.

    Every call returns an OrderResult; nothing here retries a failed or
    timed-out gateway call.

    A cancel never races a submission of the same order: it waits until the
    gateway has answered, so the exchange reference is known when the
    cancel is sent.
    """

    def __init__(
        self,
        tracker: OrderTracker,
        gateway: ExecutionGateway,
        gate: RiskGate,
        state_manager: StateManager,
        notifier: NotificationDispatcher,
        capital: float,
    ):
        self.tracker = tracker
        self.gateway = gateway
        self.gate = gate
        self.state_manager = state_manager
        self.notifier = notifier
        self.capital = capital
        # Order id -> set once its submission has finished
        self._submissions: Dict[str, asyncio.Event] = {}
        self._cancel_requests: Set[str] = set()
        self._stop_loss_notified: Set[str] = set()
        logger.info(f"Order executor initialized (capital {capital})")

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def open_position(
        self,
        proposal: OpenPosition,
        price: float,
        veto: Optional[Veto] = None,
    ) -> OrderResult:
        """Evaluate, reserve and submit a new position."""
        if price <= 0:
            return OrderResult.failed(f"Invalid price {price} for {proposal.pair}")

        # Evaluation and reservation are one step, so concurrent proposals
        # cannot both pass the position-count check.
        async with self.state_manager.lock_state(POSITION_RESERVATION_LOCK):
            reason = veto() if veto else None
            if reason:
                logger.warning(f"Open {proposal.pair} vetoed: {reason}")
                return OrderResult.denied(reason)

            decision = self.gate.evaluate(proposal)
            if not decision.approved:
                return OrderResult.denied(decision.reason or "Denied by risk gate")

            quantity = self.capital * proposal.size_pct / 100.0 / price
            order = Order(pair=proposal.pair, side=proposal.side, quantity=quantity)
            self.tracker.register(order)
            self._submissions[order.id] = asyncio.Event()

        return await asyncio.shield(self._submit(order))

    async def _submit(self, order: Order) -> OrderResult:
        try:
            await self.tracker.persist(order.id)
            return await self._send(order)
        finally:
            self._cancel_requests.discard(order.id)
            self._submissions.pop(order.id).set()

    async def _send(self, order: Order) -> OrderResult:
        result = await self.tracker.transition(order.id, OrderStatus.SUBMITTED)
        if not result.applied:
            return result

        try:
            reply = await asyncio.wait_for(self.gateway.submit(result.order), timeout=self.gateway.timeout)
        except (asyncio.TimeoutError, ExecutionTimeout) as e:
            logger.error(f"Submission of order {order.id} timed out: {e}")
            self._report_unavailable(order, f"Submission timed out after {self.gateway.timeout}s")
            failed = await self.tracker.transition(order.id, OrderStatus.FAILED)
            return OrderResult.failed("Execution timeout", failed.order)
        except Exception as e:
            logger.error(f"Submission of order {order.id} failed: {e}")
            self._report_unavailable(order, f"Submission failed: {e}")
            failed = await self.tracker.transition(order.id, OrderStatus.FAILED)
            return OrderResult.failed(f"Submission error: {e}", failed.order)

        if not reply.accepted:
            logger.warning(f"Order {order.id} rejected: {reply.reason}")
            rejected = await self.tracker.transition(order.id, OrderStatus.REJECTED)
            return OrderResult.failed(f"Rejected: {reply.reason}", rejected.order)

        latest = self.tracker.get(order.id)
        if latest.is_terminal:
            # Ended locally while the exchange was still accepting it
            logger.error(f"Order {order.id} became {latest.status.value} during submission, cancelling on exchange")
            await self._cancel_on_exchange(latest.model_copy(update={"exchange_order_id": reply.exchange_order_id}))
            return OrderResult.failed(f"Order was {latest.status.value} during submission", latest)

        if reply.exchange_order_id:
            await self.tracker.annotate(order.id, exchange_order_id=reply.exchange_order_id)

        if reply.status is not None and reply.status is not OrderStatus.SUBMITTED:
            result = await self.apply_report(
                order.id, reply.status, reply.filled_quantity, reply.average_price
            )
        else:
            result = OrderResult.applied_to(self.tracker.get(order.id))

        latest = self.tracker.get(order.id)
        if order.id in self._cancel_requests and latest.filled_quantity == 0:
            logger.warning(f"Order {order.id} accepted by the exchange while a cancel was requested")
            return OrderResult.failed("Cancel requested during submission", latest)

        if latest.is_opening:
            self.notifier.publish(OrderOpened(order=latest))
        return result

    def _report_unavailable(self, order: Order, detail: str) -> None:
        self.notifier.publish(CollaboratorUnavailable(
            task=ORDER_EXECUTION, detail=f"Order {order.id}: {detail}", pair=order.pair
        ))

    # ------------------------------------------------------------------
    # Exchange reports
    # ------------------------------------------------------------------

    async def apply_report(
        self,
        order_id: str,
        status: OrderStatus,
        filled_quantity: Optional[float] = None,
        average_price: Optional[float] = None,
    ) -> OrderResult:
        """Apply an execution report from the exchange."""
        order = self.tracker.get(order_id)
        if order is None:
            return OrderResult.failed(f"Unknown order {order_id}")

        changes = {}
        if average_price:
            changes["average_price"] = average_price
            if order.is_opening and order.stop_loss_price is None:
                changes.update(self._exit_levels(order, average_price))

        if status is order.status and status is OrderStatus.PARTIALLY_FILLED:
            result = await self.tracker.annotate(order_id, filled_quantity=filled_quantity, **changes)
        else:
            result = await self.tracker.transition(order_id, status, filled_quantity, **changes)

        if result.applied and not result.order.is_opening and result.order.status is OrderStatus.FILLED:
            self.notifier.publish(OrderClosed(order=result.order, reason="position closed"))
        return result

    async def sync_active_orders(self) -> Dict[str, OrderResult]:
        """Poll the gateway for orders live on the exchange and apply what changed."""
        results = {}
        for order in self.tracker.active_orders():
            if not order.status.is_on_exchange or not order.exchange_order_id:
                continue
            try:
                reply = await asyncio.wait_for(self.gateway.fetch_status(order), timeout=self.gateway.timeout)
            except (asyncio.TimeoutError, ExecutionTimeout):
                logger.warning(f"Status poll for order {order.id} timed out")
                self._report_unavailable(order, f"Status poll timed out after {self.gateway.timeout}s")
                continue
            except Exception as e:
                logger.warning(f"Status poll for order {order.id} failed: {e}")
                self._report_unavailable(order, f"Status poll failed: {e}")
                continue
            if reply is None or reply.status is None:
                continue
            changed = reply.status is not order.status or (
                reply.filled_quantity is not None and reply.filled_quantity != order.filled_quantity
            )
            if changed:
                results[order.id] = await asyncio.shield(self.apply_report(
                    order.id, reply.status, reply.filled_quantity, reply.average_price
                ))
        return results

    def _exit_levels(self, order: Order, entry_price: float) -> Dict[str, float]:
        limits = self.gate.current_limits
        if limits.stop_loss_pct <= 0 or limits.take_profit_pct <= 0:
            return {}
        m = order.side.pnl_multiplier
        return {
            "stop_loss_price": entry_price * (1 - m * limits.stop_loss_pct / 100.0),
            "take_profit_price": entry_price * (1 + m * limits.take_profit_pct / 100.0),
        }

    # ------------------------------------------------------------------
    # Cancelling and closing
    # ------------------------------------------------------------------

    async def cancel_order(self, order_id: str, reason: str = "") -> OrderResult:
        """Cancel an order, on the exchange first if it reached it."""
        submission = self._submissions.get(order_id)
        if submission is not None:
            logger.info(f"Cancel of order {order_id} waits for its submission")
            self._cancel_requests.add(order_id)
            await submission.wait()

        order = self.tracker.get(order_id)
        if order is None:
            return OrderResult.failed(f"Unknown order {order_id}")

        decision = self.gate.evaluate(TransitionRequest(order=order, target=OrderStatus.CANCELLED))
        if not decision.approved:
            logger.error(f"Cancel refused: {decision.reason}")
            return OrderResult.denied(decision.reason, order)

        if order.status.is_on_exchange:
            error = await self._cancel_on_exchange(order)
            if error:
                return OrderResult.failed(error, order)

        result = await self.tracker.transition(order_id, OrderStatus.CANCELLED)
        if result.applied:
            self.notifier.publish(OrderClosed(order=result.order, reason=reason or "cancelled"))
        return result

    async def _cancel_on_exchange(self, order: Order) -> Optional[str]:
        """Ask the gateway to cancel ``order``; returns why it did not, if so."""
        try:
            reply = await asyncio.wait_for(self.gateway.cancel(order), timeout=self.gateway.timeout)
        except (asyncio.TimeoutError, ExecutionTimeout) as e:
            logger.error(f"Cancel of order {order.id} timed out: {e}")
            self._report_unavailable(order, f"Cancel timed out after {self.gateway.timeout}s")
            return "Execution timeout"
        except Exception as e:
            logger.error(f"Cancel of order {order.id} failed: {e}")
            self._report_unavailable(order, f"Cancel failed: {e}")
            return f"Cancel error: {e}"
        if not reply.accepted:
            logger.warning(f"Cancel of order {order.id} rejected: {reply.reason}")
            return f"Cancel rejected: {reply.reason}"
        return None

    async def cancel_all_active(self, reason: str = "") -> Dict[str, OrderResult]:
        """Request cancellation of every non-terminal order."""
        orders = self.tracker.active_orders()
        results = await asyncio.gather(
            *(asyncio.shield(self.cancel_order(o.id, reason)) for o in orders)
        )
        return {o.id: r for o, r in zip(orders, results)}

    async def close_position(self, opening_id: str, reason: str = "") -> OrderResult:
        """Close the position opened by ``opening_id``. Never blocked by risk."""
        opening = self.tracker.get(opening_id)
        if opening is None or not opening.is_opening:
            return OrderResult.failed(f"No position opened by order {opening_id}")
        if self.tracker.pending_close(opening_id) is not None:
            return OrderResult.denied(f"Close of {opening_id} already in flight", opening)

        if opening.is_cancellable:
            cancelled = await self.cancel_order(opening_id, reason or "close requested")
            if not cancelled.applied:
                return cancelled
            if cancelled.order.filled_quantity == 0:
                return cancelled

        remaining = self.tracker.position_remaining(opening_id)
        if remaining <= 0:
            return OrderResult.denied(f"Position {opening_id} is already flat", opening)

        closing = Order(
            pair=opening.pair,
            side=opening.side.opposite,
            quantity=remaining,
            closes_order_id=opening_id,
        )
        self.tracker.register(closing)
        self._submissions[closing.id] = asyncio.Event()
        logger.info(f"Closing position {opening_id} on {opening.pair} ({reason or 'requested'})")
        return await asyncio.shield(self._submit(closing))

    async def close_all_positions(self, reason: str = "") -> Dict[str, OrderResult]:
        """Close every position that still holds exposure, keyed by opening order id."""
        openings = [
            o for o in self.tracker.open_positions()
            if self.tracker.position_remaining(o.id) > 0 and self.tracker.pending_close(o.id) is None
        ]
        results = await asyncio.gather(
            *(asyncio.shield(self.close_position(o.id, reason)) for o in openings)
        )
        return {o.id: r for o, r in zip(openings, results)}

    async def check_exit_levels(self, pair: str, price: float) -> List[OrderResult]:
        """Close positions on ``pair`` whose stop loss or take profit was crossed."""
        results = []
        for opening in self.tracker.open_positions(pair):
            if opening.stop_loss_price is None or opening.filled_quantity <= 0:
                continue
            if self.tracker.pending_close(opening.id) is not None:
                continue
            m = opening.side.pnl_multiplier
            if m * (price - opening.stop_loss_price) <= 0:
                # Once per position, however many close attempts it takes
                if opening.id not in self._stop_loss_notified:
                    self._stop_loss_notified.add(opening.id)
                    self.notifier.publish(StopLossTriggered(
                        order=opening, price=price, stop_loss_price=opening.stop_loss_price
                    ))
                results.append(await self.close_position(opening.id, "stop loss"))
            elif opening.take_profit_price is not None and m * (price - opening.take_profit_price) >= 0:
                results.append(await self.close_position(opening.id, "take profit"))
        return results
