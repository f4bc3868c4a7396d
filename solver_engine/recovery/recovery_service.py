"""
RecoveryService: resume every non-terminal order after a restart.

For each order the current stage is derived from its status:

    status        stage        hash recorded        no hash
    PENDING       prepare      re-query             re-evaluate
    EXECUTING     fill         re-query             submit fill (stored params)
    EXECUTED      post_fill    re-query             handle_post_fill_ready
    POST_FILLED   (monitor)    -                    restart settlement monitor
    SETTLED       pre_claim    re-query             handle_pre_claim_ready
    PRE_CLAIMED   claim        re-query             enqueue claim

"Re-query" asks delivery for the receipt and publishes the same
TRANSACTION_CONFIRMED / TRANSACTION_FAILED event the live path would have,
or resumes the confirmation wait if there is no receipt yet. Nothing is
ever resubmitted for a stage whose hash is recorded.

Per-order errors are logged and counted; they never abort the scan.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from solver_engine.core.event_bus import EventBus, EventType
from solver_engine.core.types import STAGE_STATUS, Order, OrderStatus, TransactionType
from solver_engine.execution.transaction_submitter import TransactionSubmitter
from solver_engine.handlers.intent_handler import IntentHandler
from solver_engine.handlers.order_handler import OrderHandler
from solver_engine.handlers.settlement_handler import SettlementHandler
from solver_engine.monitoring.settlement_monitor import SettlementMonitor
from solver_engine.state.order_state_machine import OrderStateMachine

log = logging.getLogger("solver")

# Stage whose transaction an order at this status is waiting on
_STAGE_FOR_STATUS: Dict[OrderStatus, TransactionType] = {
    status: tx_type for tx_type, status in STAGE_STATUS.items()
}


@dataclass
class RecoveryResult:
    """Summary of one recovery pass."""
    scanned: int = 0
    requeried: int = 0
    reentered: int = 0
    monitors_restarted: int = 0
    errors: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    failed_orders: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "requeried": self.requeried,
            "reentered": self.reentered,
            "monitors_restarted": self.monitors_restarted,
            "errors": self.errors,
            "by_status": dict(self.by_status),
        }


class RecoveryService:
    """
    Startup reconciliation of persisted orders.

    Usage:
        result = await RecoveryService(...).run()
    """

    SOURCE = "recovery"

    def __init__(
        self,
        state_machine: OrderStateMachine,
        event_bus: EventBus,
        submitter: TransactionSubmitter,
        intent_handler: IntentHandler,
        order_handler: OrderHandler,
        settlement_handler: SettlementHandler,
        monitor: SettlementMonitor,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.state_machine = state_machine
        self.event_bus = event_bus
        self.submitter = submitter
        self.intent_handler = intent_handler
        self.order_handler = order_handler
        self.settlement_handler = settlement_handler
        self.monitor = monitor
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    async def run(self) -> RecoveryResult:
        result = RecoveryResult()
        orders = await self.state_machine.get_active_orders()
        self._log_event("recovery_start", active_orders=len(orders))

        for order in orders:
            result.scanned += 1
            key = order.status.value
            result.by_status[key] = result.by_status.get(key, 0) + 1
            try:
                await self._recover(order, result)
            except Exception as e:
                result.errors += 1
                result.failed_orders.append(order.id)
                self._log_event(
                    "recovery_order_error",
                    order_id=order.id,
                    status=order.status.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self._log_event("recovery_complete", **result.to_dict())
        await self.event_bus.emit(
            EventType.RECOVERY_COMPLETED,
            source=self.SOURCE,
            **result.to_dict(),
        )
        return result

    async def _recover(self, order: Order, result: RecoveryResult) -> None:
        if order.status == OrderStatus.POST_FILLED:
            if self.monitor.start(order.id, order.tx_hash(TransactionType.FILL)):
                result.monitors_restarted += 1
            return

        tx_type = _STAGE_FOR_STATUS[order.status]
        ref = order.transactions.get(tx_type)
        if ref is not None:
            self._log_event(
                "recovery_requery",
                order_id=order.id,
                status=order.status.name,
                tx_type=tx_type.value,
                tx_hash=ref.tx_hash,
            )
            await self.submitter.track(order.id, tx_type, ref)
            result.requeried += 1
            return

        self._log_event(
            "recovery_reenter",
            order_id=order.id,
            status=order.status.name,
            tx_type=tx_type.value,
        )
        if order.status == OrderStatus.PENDING:
            await self.intent_handler.evaluate(order.id)
        elif order.status == OrderStatus.EXECUTING:
            await self.order_handler.submit_fill(order.id)
        elif order.status == OrderStatus.EXECUTED:
            await self.settlement_handler.handle_post_fill_ready(order.id)
        elif order.status == OrderStatus.SETTLED:
            await self.settlement_handler.handle_pre_claim_ready(order.id)
        elif order.status == OrderStatus.PRE_CLAIMED:
            await self.settlement_handler.enqueue_claim(order.id)
        result.reentered += 1
