"""
Lifecycle handlers.

Each handler reacts to bus events and advances orders through the state
machine. Handlers never call one another directly.
"""

from solver_engine.handlers.base import BaseHandler, stage_failure
from solver_engine.handlers.intent_handler import IntentHandler
from solver_engine.handlers.order_handler import OrderHandler
from solver_engine.handlers.transaction_handler import TransactionHandler
from solver_engine.handlers.settlement_handler import SettlementHandler

__all__ = [
    "BaseHandler",
    "stage_failure",
    "IntentHandler",
    "OrderHandler",
    "TransactionHandler",
    "SettlementHandler",
]
