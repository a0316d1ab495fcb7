"""Notification events and delivery."""

from .events import (
    NotificationEvent, OrderOpened, OrderClosed, StopLossTriggered,
    DailyLimitReached, EmergencyStop, CollaboratorUnavailable,
)
from .dispatcher import NotificationSink, LoggingNotificationSink, NotificationDispatcher

__all__ = [
    "NotificationEvent",
    "OrderOpened",
    "OrderClosed",
    "StopLossTriggered",
    "DailyLimitReached",
    "EmergencyStop",
    "CollaboratorUnavailable",
    "NotificationSink",
    "LoggingNotificationSink",
    "NotificationDispatcher",
]
