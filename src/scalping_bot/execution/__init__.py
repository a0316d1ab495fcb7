"""Order execution and emergency stop module."""

from .gateway import ExecutionGateway, CCXTExecutionGateway, GatewayReply, ExecutionTimeout
from .executor import OrderExecutor
from .emergency import EmergencyStopController, EmergencyStopActive

__all__ = [
    "ExecutionGateway",
    "CCXTExecutionGateway",
    "GatewayReply",
    "ExecutionTimeout",
    "OrderExecutor",
    "EmergencyStopController",
    "EmergencyStopActive",
]
