"""Order lifecycle module."""

from .state_machine import (
    InvalidTransition, TRANSITIONS, allowed_targets, can_transition, transition
)
from .tracker import OrderTracker

__all__ = [
    "InvalidTransition",
    "TRANSITIONS",
    "allowed_targets",
    "can_transition",
    "transition",
    "OrderTracker",
]
