"""
Core package.

This package contains the event bus, domain types, collaborator contracts
and the error taxonomy shared by every engine component.
"""

from solver_engine.core.event_bus import EventBus, EventType, Event, Subscription
from solver_engine.core.exceptions import (
    SolverError,
    ConfigError,
    ValidationError,
    UnsupportedStandardError,
    OrderExistsError,
    OrderNotFoundError,
    InvalidTransitionError,
    DeliveryError,
    SettlementError,
)
from solver_engine.core.interfaces import StandardRegistry, SettlementRegistry
from solver_engine.core.utils import now_ms, now_s, gwei_to_wei

__all__ = [
    "EventBus",
    "EventType",
    "Event",
    "Subscription",
    "SolverError",
    "ConfigError",
    "ValidationError",
    "UnsupportedStandardError",
    "OrderExistsError",
    "OrderNotFoundError",
    "InvalidTransitionError",
    "DeliveryError",
    "SettlementError",
    "StandardRegistry",
    "SettlementRegistry",
    "now_ms",
    "now_s",
    "gwei_to_wei",
]
