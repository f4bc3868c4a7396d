"""
State management package.

This package contains order persistence and the order state machine.
"""

from solver_engine.state.store import MemoryStore, FileStore, create_store, INTENTS, ORDERS, TX_INDEX
from solver_engine.state.order_state_machine import (
    OrderStateMachine,
    VALID_TRANSITIONS,
    is_valid_transition,
)

__all__ = [
    "MemoryStore",
    "FileStore",
    "create_store",
    "INTENTS",
    "ORDERS",
    "TX_INDEX",
    "OrderStateMachine",
    "VALID_TRANSITIONS",
    "is_valid_transition",
]
