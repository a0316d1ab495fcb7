"""Unit tests for the CCXT execution gateway."""

from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt
import pytest

from scalping_bot.core.enums import OrderStatus
from scalping_bot.execution.gateway import CCXTExecutionGateway, ExecutionTimeout

from conftest import make_order


def gateway_with(exchange):
    gateway = CCXTExecutionGateway.__new__(CCXTExecutionGateway)
    gateway.exchange_name = "bybit"
    gateway.config = {}
    gateway.timeout = 1.0
    gateway.exchange = exchange
    return gateway


class TestSubmit:

    @pytest.mark.asyncio
    async def test_market_order_acknowledged(self):
        exchange = MagicMock()
        exchange.create_market_order = AsyncMock(return_value={
            "id": "123", "status": "closed", "filled": 1.0, "average": 100.2,
        })
        order = make_order()

        reply = await gateway_with(exchange).submit(order)

        assert reply.accepted
        assert reply.exchange_order_id == "123"
        assert reply.status is OrderStatus.FILLED
        assert reply.average_price == 100.2
        exchange.create_market_order.assert_called_once_with(
            "BTC/USDT", "buy", 1.0, params={"clientOrderId": order.id}
        )

    @pytest.mark.asyncio
    async def test_open_order_has_no_status_yet(self):
        exchange = MagicMock()
        exchange.create_market_order = AsyncMock(return_value={"id": "1", "status": "open", "filled": 0.0})
        reply = await gateway_with(exchange).submit(make_order())
        assert reply.accepted
        assert reply.status is None

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_rejection(self):
        exchange = MagicMock()
        exchange.create_market_order = AsyncMock(side_effect=ccxt.InsufficientFunds("no balance"))
        reply = await gateway_with(exchange).submit(make_order())
        assert not reply.accepted
        assert "no balance" in reply.reason

    @pytest.mark.asyncio
    async def test_request_timeout_is_execution_timeout(self):
        exchange = MagicMock()
        exchange.create_market_order = AsyncMock(side_effect=ccxt.RequestTimeout("slow"))
        with pytest.raises(ExecutionTimeout):
            await gateway_with(exchange).submit(make_order())


class TestCancelAndStatus:

    @pytest.mark.asyncio
    async def test_cancel_requires_exchange_reference(self):
        reply = await gateway_with(MagicMock()).cancel(make_order())
        assert not reply.accepted

    @pytest.mark.asyncio
    async def test_cancel_unknown_order_rejected(self):
        exchange = MagicMock()
        exchange.cancel_order = AsyncMock(side_effect=ccxt.OrderNotFound("gone"))
        order = make_order(OrderStatus.SUBMITTED, exchange_order_id="9")
        reply = await gateway_with(exchange).cancel(order)
        assert not reply.accepted

    @pytest.mark.asyncio
    async def test_partial_fill_status(self):
        exchange = MagicMock()
        exchange.fetch_order = AsyncMock(return_value={"status": "open", "filled": 0.4, "average": 99.9})
        order = make_order(OrderStatus.SUBMITTED, exchange_order_id="9")

        reply = await gateway_with(exchange).fetch_status(order)

        assert reply.status is OrderStatus.PARTIALLY_FILLED
        assert reply.filled_quantity == 0.4
        exchange.fetch_order.assert_called_once_with("9", "BTC/USDT")

    @pytest.mark.asyncio
    async def test_cancelled_on_exchange(self):
        exchange = MagicMock()
        exchange.fetch_order = AsyncMock(return_value={"status": "canceled", "filled": 0.0})
        order = make_order(OrderStatus.SUBMITTED, exchange_order_id="9")
        reply = await gateway_with(exchange).fetch_status(order)
        assert reply.status is OrderStatus.CANCELLED
