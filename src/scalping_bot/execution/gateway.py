"""Execution gateway contract and CCXT implementation."""

from abc import ABC, abstractmethod
from typing import Dict, Optional
import logging

import ccxt.async_support as ccxt
from pydantic import BaseModel, ConfigDict

from ..core.enums import OrderStatus
from ..core.models import Order

logger = logging.getLogger(__name__)


class ExecutionTimeout(Exception):
    """Raised when the gateway does not answer within its timeout."""
    pass


class GatewayReply(BaseModel):
    """Exchange acknowledgement or rejection."""

    model_config = ConfigDict(frozen=True)

    accepted: bool
    exchange_order_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    filled_quantity: Optional[float] = None
    average_price: Optional[float] = None
    reason: Optional[str] = None

    @classmethod
    def ack(cls, exchange_order_id: Optional[str] = None, **kwargs) -> "GatewayReply":
        return cls(accepted=True, exchange_order_id=exchange_order_id, **kwargs)

    @classmethod
    def reject(cls, reason: str) -> "GatewayReply":
        return cls(accepted=False, reason=reason)


class ExecutionGateway(ABC):
    """Abstract order gateway. Rate limiting and retries are the gateway's concern."""

    timeout: float = 10.0

    @abstractmethod
    async def submit(self, order: Order) -> GatewayReply:
        """Send an order to the exchange."""
        pass

    @abstractmethod
    async def cancel(self, order: Order) -> GatewayReply:
        """Cancel an order on the exchange."""
        pass

    async def fetch_status(self, order: Order) -> Optional[GatewayReply]:
        """Latest execution report for a live order, if the gateway can tell."""
        return None

    async def close(self):
        pass


class CCXTExecutionGateway(ExecutionGateway):
    """CCXT-based execution gateway placing market orders."""

    def __init__(self, exchange_name: str, config: Optional[Dict] = None, timeout: float = 10.0):
        self.exchange_name = exchange_name
        self.config = config or {}
        self.timeout = timeout

        is_sandbox = self.config.get("sandbox", False)
        ccxt_keys = {k: v for k, v in self.config.items() if k != "sandbox"}
        exchange_class = getattr(ccxt, exchange_name)
        self.exchange = exchange_class({
            "enableRateLimit": True,
            "timeout": int(timeout * 1000),
            **ccxt_keys,
        })
        if is_sandbox:
            self.exchange.set_sandbox_mode(True)

        logger.info(f"Initialized CCXT execution gateway for {exchange_name} (sandbox={is_sandbox})")

    async def submit(self, order: Order) -> GatewayReply:
        try:
            result = await self.exchange.create_market_order(
                order.pair,
                order.side.value.lower(),
                order.quantity,
                params={"clientOrderId": order.id},
            )
        except (ccxt.InsufficientFunds, ccxt.InvalidOrder) as e:
            logger.warning(f"Order {order.id} rejected by {self.exchange_name}: {e}")
            return GatewayReply.reject(str(e))
        except ccxt.RequestTimeout as e:
            raise ExecutionTimeout(str(e)) from e

        return GatewayReply.ack(
            exchange_order_id=result.get("id"),
            status=self._map_status(result.get("status"), result.get("filled"), order.quantity),
            filled_quantity=result.get("filled"),
            average_price=result.get("average"),
        )

    async def cancel(self, order: Order) -> GatewayReply:
        if not order.exchange_order_id:
            return GatewayReply.reject("Order has no exchange reference")
        try:
            await self.exchange.cancel_order(order.exchange_order_id, order.pair)
        except ccxt.OrderNotFound as e:
            return GatewayReply.reject(str(e))
        except ccxt.RequestTimeout as e:
            raise ExecutionTimeout(str(e)) from e
        logger.info(f"Cancelled order {order.id} ({order.exchange_order_id})")
        return GatewayReply.ack(order.exchange_order_id)

    async def fetch_status(self, order: Order) -> Optional[GatewayReply]:
        if not order.exchange_order_id:
            return None
        try:
            result = await self.exchange.fetch_order(order.exchange_order_id, order.pair)
        except ccxt.RequestTimeout as e:
            raise ExecutionTimeout(str(e)) from e
        return GatewayReply.ack(
            exchange_order_id=order.exchange_order_id,
            status=self._map_status(result.get("status"), result.get("filled"), order.quantity),
            filled_quantity=result.get("filled"),
            average_price=result.get("average"),
        )

    def _map_status(self, ccxt_status: Optional[str], filled: Optional[float], quantity: float) -> Optional[OrderStatus]:
        """Map a CCXT order status onto the lifecycle."""
        if not ccxt_status:
            return None
        status = ccxt_status.lower()
        if status == "closed":
            return OrderStatus.FILLED
        if status in ("canceled", "cancelled"):
            return OrderStatus.CANCELLED
        if status == "rejected":
            return OrderStatus.REJECTED
        if status == "expired":
            return OrderStatus.EXPIRED
        if status == "open" and filled and 0 < filled < quantity:
            return OrderStatus.PARTIALLY_FILLED
        return None

    async def close(self):
        await self.exchange.close()
        logger.info(f"Closed execution connection to {self.exchange_name}")
