"""Unit tests for OrderExecutor with a fake gateway."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from scalping_bot.core.enums import OrderSide, OrderStatus, Outcome
from scalping_bot.core.models import OpenPosition
from scalping_bot.execution.gateway import GatewayReply

from conftest import make_order


def buy(pair="BTC/USDT", size=1.0):
    return OpenPosition(pair=pair, side=OrderSide.BUY, size_pct=size)


async def classify(gate, volatility=1.5, loss=0.0):
    return await gate.refresh(volatility, loss)


class TestOpenPosition:

    @pytest.mark.asyncio
    async def test_approved_order_is_submitted(self, executor, gate, gateway, tracker, notifier, sink):
        await classify(gate)
        result = await executor.open_position(buy(), price=100.0)

        assert result.outcome is Outcome.APPLIED
        order = tracker.get(result.order.id)
        assert order.status is OrderStatus.SUBMITTED
        assert order.exchange_order_id == "ex-1"
        # 1% of 10000 at 100
        assert order.quantity == pytest.approx(1.0)
        await notifier.drain()
        assert sink.kinds() == ["order_opened"]

    @pytest.mark.asyncio
    async def test_denied_proposal_creates_nothing(self, executor, gateway, tracker):
        result = await executor.open_position(buy(), price=100.0)
        assert result.outcome is Outcome.DENIED
        assert tracker.orders() == []
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_veto_blocks_before_gate(self, executor, gate, tracker):
        await classify(gate)
        result = await executor.open_position(buy(), price=100.0, veto=lambda: "halted")
        assert result.outcome is Outcome.DENIED
        assert result.reason == "halted"
        assert tracker.orders() == []

    @pytest.mark.asyncio
    async def test_invalid_price_fails(self, executor, gate):
        await classify(gate)
        result = await executor.open_position(buy(), price=0.0)
        assert result.outcome is Outcome.FAILED

    @pytest.mark.asyncio
    async def test_immediate_fill_sets_exit_levels(self, executor, gate, gateway, tracker):
        await classify(gate)
        gateway.fill_on_submit = True
        result = await executor.open_position(buy(), price=100.0)

        order = tracker.get(result.order.id)
        assert order.status is OrderStatus.FILLED
        assert order.average_price == 100.0
        # VERY_LOW: 0.2% stop loss, 0.4% take profit
        assert order.stop_loss_price == pytest.approx(99.8)
        assert order.take_profit_price == pytest.approx(100.4)

    @pytest.mark.asyncio
    async def test_rejection_marks_order_rejected(self, executor, gate, gateway, tracker):
        await classify(gate)
        gateway.reject_reason = "insufficient funds"
        result = await executor.open_position(buy(), price=100.0)
        assert result.outcome is Outcome.FAILED
        assert "insufficient funds" in result.reason
        assert result.order.status is OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_timeout_marks_order_failed_without_retry(self, executor, gate, gateway):
        await classify(gate)
        gateway.timeout = 0.05
        gateway.submit_delay = 0.2
        result = await executor.open_position(buy(), price=100.0)
        assert result.outcome is Outcome.FAILED
        assert result.reason == "Execution timeout"
        assert result.order.status is OrderStatus.FAILED
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_timeout_is_reported_to_sink(self, executor, gate, gateway, notifier, sink):
        await classify(gate)
        gateway.timeout = 0.05
        gateway.submit_delay = 0.2
        await executor.open_position(buy("ETH/USDT"), price=100.0)

        await notifier.drain()
        [event] = sink.events
        assert event.kind == "collaborator_unavailable"
        assert event.task == "order-execution"
        assert event.pair == "ETH/USDT"
        assert "timed out" in event.detail

    @pytest.mark.asyncio
    async def test_concurrent_proposals_respect_position_limit(self, executor, gate, tracker):
        await classify(gate)
        pairs = ["BTC/USDT", "ETH/USDT", "SOL/USDT", "XRP/USDT", "ADA/USDT"]
        results = await asyncio.gather(*(executor.open_position(buy(p), 100.0) for p in pairs))
        applied = [r for r in results if r.applied]
        assert len(applied) == 3
        assert tracker.open_position_count() == 3

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_submission(self, executor, gate, gateway, tracker):
        await classify(gate)
        gateway.submit_delay = 0.05
        task = asyncio.create_task(executor.open_position(buy(), 100.0))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.1)

        [order] = tracker.orders()
        assert order.status is OrderStatus.SUBMITTED
        assert order.exchange_order_id is not None


class TestCancelAndClose:

    async def _open(self, executor, gate, pair="BTC/USDT"):
        await classify(gate)
        result = await executor.open_position(buy(pair), 100.0)
        return result.order

    @pytest.mark.asyncio
    async def test_cancel_submitted_order(self, executor, gate, gateway, notifier, sink):
        order = await self._open(executor, gate)
        result = await executor.cancel_order(order.id, "test")
        assert result.applied
        assert result.order.status is OrderStatus.CANCELLED
        assert [o.id for o in gateway.cancelled] == [order.id]
        await notifier.drain()
        assert "order_closed" in sink.kinds()

    @pytest.mark.asyncio
    async def test_cancel_pending_order_skips_exchange(self, executor, gateway, tracker):
        order = make_order()
        tracker.register(order)
        result = await executor.cancel_order(order.id)
        assert result.applied
        assert gateway.cancelled == []

    @pytest.mark.asyncio
    async def test_cancel_terminal_order_denied(self, executor, gate, gateway):
        gateway.fill_on_submit = True
        order = await self._open(executor, gate)
        result = await executor.cancel_order(order.id)
        assert result.outcome is Outcome.DENIED

    @pytest.mark.asyncio
    async def test_exchange_refusing_cancel_leaves_order(self, executor, gate, gateway, tracker):
        order = await self._open(executor, gate)
        gateway.reject_cancel = True
        result = await executor.cancel_order(order.id)
        assert result.outcome is Outcome.FAILED
        assert tracker.get(order.id).status is OrderStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_cancel_timeout_is_reported(self, executor, gate, gateway, tracker, notifier, sink):
        order = await self._open(executor, gate)
        gateway.timeout = 0.05
        gateway.cancel_delay = 0.2
        result = await executor.cancel_order(order.id)

        assert result.reason == "Execution timeout"
        assert tracker.get(order.id).status is OrderStatus.SUBMITTED
        await notifier.drain()
        [event] = [e for e in sink.events if e.kind == "collaborator_unavailable"]
        assert event.pair == "BTC/USDT"
        assert "Cancel timed out" in event.detail

    @pytest.mark.asyncio
    async def test_close_filled_position(self, executor, gate, gateway, tracker):
        gateway.fill_on_submit = True
        opening = await self._open(executor, gate)
        gateway.fill_price = 101.0

        result = await executor.close_position(opening.id, "done")
        assert result.applied
        closing = result.order
        assert closing.side is OrderSide.SELL
        assert closing.closes_order_id == opening.id
        assert closing.status is OrderStatus.FILLED
        assert tracker.open_position_count() == 0
        assert tracker.realized_pnl == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_close_unfilled_order_cancels_it(self, executor, gate, gateway, tracker):
        opening = await self._open(executor, gate)
        result = await executor.close_position(opening.id)
        assert result.order.status is OrderStatus.CANCELLED
        assert len(gateway.submitted) == 1

    @pytest.mark.asyncio
    async def test_close_is_not_blocked_by_critical_risk(self, executor, gate, gateway):
        gateway.fill_on_submit = True
        opening = await self._open(executor, gate)
        await gate.refresh(50.0, 5.0)
        result = await executor.close_position(opening.id)
        assert result.applied

    @pytest.mark.asyncio
    async def test_close_unknown_position(self, executor):
        result = await executor.close_position("nope")
        assert result.outcome is Outcome.FAILED

    @pytest.mark.asyncio
    async def test_cancel_all_active(self, executor, gate, tracker):
        await classify(gate)
        for pair in ("BTC/USDT", "ETH/USDT"):
            await executor.open_position(buy(pair), 100.0)
        results = await executor.cancel_all_active("shutdown")
        assert len(results) == 2
        assert all(r.applied for r in results.values())
        assert tracker.active_orders() == []


class TestReportsAndExits:

    @pytest.mark.asyncio
    async def test_partial_then_full_fill(self, executor, gate, tracker, notifier, sink):
        await classify(gate)
        order = (await executor.open_position(buy(), 100.0)).order

        partial = await executor.apply_report(order.id, OrderStatus.PARTIALLY_FILLED, 0.4, 100.0)
        assert partial.order.status is OrderStatus.PARTIALLY_FILLED
        more = await executor.apply_report(order.id, OrderStatus.PARTIALLY_FILLED, 0.7, 100.0)
        assert more.order.filled_quantity == pytest.approx(0.7)
        done = await executor.apply_report(order.id, OrderStatus.FILLED, 1.0, 100.0)
        assert done.order.status is OrderStatus.FILLED
        assert done.order.stop_loss_price is not None

    @pytest.mark.asyncio
    async def test_report_for_terminal_order_denied(self, executor, gate):
        await classify(gate)
        order = (await executor.open_position(buy(), 100.0)).order
        await executor.cancel_order(order.id)
        result = await executor.apply_report(order.id, OrderStatus.FILLED, 1.0, 100.0)
        assert result.outcome is Outcome.DENIED

    @pytest.mark.asyncio
    async def test_sync_applies_gateway_reports(self, executor, gate, gateway, tracker):
        await classify(gate)
        order = (await executor.open_position(buy(), 100.0)).order
        exchange_id = tracker.get(order.id).exchange_order_id
        gateway.reports[exchange_id] = GatewayReply.ack(
            exchange_id, status=OrderStatus.FILLED, filled_quantity=1.0, average_price=100.5
        )
        results = await executor.sync_active_orders()
        assert results[order.id].applied
        assert tracker.get(order.id).status is OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_stop_loss_closes_position(self, executor, gate, gateway, tracker, notifier, sink):
        gateway.fill_on_submit = True
        await classify(gate)
        opening = (await executor.open_position(buy(), 100.0)).order

        assert await executor.check_exit_levels("BTC/USDT", 99.95) == []

        gateway.fill_price = 99.7
        results = await executor.check_exit_levels("BTC/USDT", 99.7)
        assert len(results) == 1 and results[0].applied
        assert tracker.position_remaining(opening.id) == 0
        await notifier.drain()
        assert "stop_loss_triggered" in sink.kinds()

    @pytest.mark.asyncio
    async def test_take_profit_closes_position(self, executor, gate, gateway, tracker, notifier, sink):
        gateway.fill_on_submit = True
        await classify(gate)
        opening = (await executor.open_position(buy(), 100.0)).order

        gateway.fill_price = 100.5
        results = await executor.check_exit_levels("BTC/USDT", 100.5)
        assert len(results) == 1
        assert tracker.realized_pnl > 0
        await notifier.drain()
        assert "stop_loss_triggered" not in sink.kinds()

    @pytest.mark.asyncio
    async def test_failed_status_poll_is_reported(self, executor, gate, gateway, tracker, notifier, sink):
        await classify(gate)
        order = (await executor.open_position(buy(), 100.0)).order
        gateway.fetch_status = AsyncMock(side_effect=ConnectionError("exchange down"))

        assert await executor.sync_active_orders() == {}
        assert tracker.get(order.id).status is OrderStatus.SUBMITTED
        await notifier.drain()
        [event] = [e for e in sink.events if e.kind == "collaborator_unavailable"]
        assert "exchange down" in event.detail
        assert event.pair == "BTC/USDT"

    @pytest.mark.asyncio
    async def test_stop_loss_notified_once_while_close_fails(self, executor, gate, gateway, tracker, notifier, sink):
        gateway.fill_on_submit = True
        await classify(gate)
        opening = (await executor.open_position(buy(), 100.0)).order

        gateway.reject_reason = "exchange busy"
        for _ in range(3):
            [result] = await executor.check_exit_levels("BTC/USDT", 99.7)
            assert result.outcome is Outcome.FAILED

        assert len(tracker.closing_orders(opening.id)) == 3
        assert tracker.position_remaining(opening.id) == pytest.approx(1.0)
        await notifier.drain()
        assert sink.kinds().count("stop_loss_triggered") == 1
