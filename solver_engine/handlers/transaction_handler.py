"""
TransactionHandler: maps confirmed/failed transactions onto order transitions.

Events arrive keyed by transaction hash; the order and stage come from the
state machine's reverse index.

    stage       success                          next event
    prepare     PENDING     -> EXECUTING         ORDER_EXECUTING
    fill        EXECUTING   -> EXECUTED          POST_FILL_READY
    post_fill   EXECUTED    -> POST_FILLED       MONITORING_START
    pre_claim   SETTLED     -> PRE_CLAIMED       CLAIM_READY
    claim       PRE_CLAIMED -> FINALIZED         ORDER_COMPLETED

Any failed stage fails the order with "<stage>: <error>" and emits
ORDER_FAILED. There is no retry here.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from solver_engine.core.event_bus import Event, EventBus, EventType
from solver_engine.core.types import (
    STAGE_STATUS,
    Order,
    OrderStatus,
    TransactionReceipt,
    TransactionType,
)
from solver_engine.handlers.base import BaseHandler, stage_failure
from solver_engine.state.order_state_machine import OrderStateMachine

# (expected status, next status, event emitted after the transition)
_SUCCESS_TABLE: Dict[TransactionType, Tuple[OrderStatus, OrderStatus, EventType]] = {
    TransactionType.PREPARE: (OrderStatus.PENDING, OrderStatus.EXECUTING, EventType.ORDER_EXECUTING),
    TransactionType.FILL: (OrderStatus.EXECUTING, OrderStatus.EXECUTED, EventType.POST_FILL_READY),
    TransactionType.POST_FILL: (OrderStatus.EXECUTED, OrderStatus.POST_FILLED, EventType.MONITORING_START),
    TransactionType.PRE_CLAIM: (OrderStatus.SETTLED, OrderStatus.PRE_CLAIMED, EventType.CLAIM_READY),
    TransactionType.CLAIM: (OrderStatus.PRE_CLAIMED, OrderStatus.FINALIZED, EventType.ORDER_COMPLETED),
}


class TransactionHandler(BaseHandler):
    SOURCE = "transaction_handler"

    def __init__(
        self,
        state_machine: OrderStateMachine,
        event_bus: EventBus,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(state_machine, event_bus, log_event)
        self._dispatch: Dict[Tuple[TransactionType, bool], Callable[..., Awaitable[None]]] = {}
        for tx_type in TransactionType:
            self._dispatch[(tx_type, True)] = self._on_success
            self._dispatch[(tx_type, False)] = self._on_failure
        self._stats = {"confirmed": 0, "failed": 0, "unknown_hash": 0}

    async def on_transaction_confirmed(self, event: Event) -> None:
        await self.handle(event, success=True)

    async def on_transaction_failed(self, event: Event) -> None:
        await self.handle(event, success=False)

    async def handle(self, event: Event, success: bool) -> None:
        tx_hash = event.data["tx_hash"]
        entry = await self.state_machine.order_for_transaction(tx_hash)
        if entry is None:
            self._stats["unknown_hash"] += 1
            self._log_event("tx_unknown_hash", tx_hash=tx_hash, success=success)
            return

        handler = self._dispatch[(entry["tx_type"], success)]
        await handler(entry["order_id"], entry["tx_type"], tx_hash, event.data)

    async def _on_success(
        self,
        order_id: str,
        tx_type: TransactionType,
        tx_hash: str,
        data: Dict[str, Any],
    ) -> None:
        expected, to_status, next_event = _SUCCESS_TABLE[tx_type]
        order = await self.advance(order_id, expected, to_status, f"{tx_type.value} confirmed")
        if order is None:
            return
        self._stats["confirmed"] += 1
        await self.event_bus.emit(
            next_event,
            source=self.SOURCE,
            **self._next_payload(order, tx_type, tx_hash, data.get("receipt")),
        )

    def _next_payload(
        self,
        order: Order,
        tx_type: TransactionType,
        tx_hash: str,
        receipt: Optional[TransactionReceipt],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"order_id": order.id, "tx_hash": tx_hash}
        if tx_type == TransactionType.FILL:
            payload["fill_tx_hash"] = tx_hash
            payload["receipt"] = receipt
        elif tx_type == TransactionType.POST_FILL:
            payload["fill_tx_hash"] = order.tx_hash(TransactionType.FILL)
        return payload

    async def _on_failure(
        self,
        order_id: str,
        tx_type: TransactionType,
        tx_hash: str,
        data: Dict[str, Any],
    ) -> None:
        error = data.get("error") or "transaction failed"
        if await self.fail_order(order_id, stage_failure(tx_type, error), STAGE_STATUS[tx_type]):
            self._stats["failed"] += 1

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
