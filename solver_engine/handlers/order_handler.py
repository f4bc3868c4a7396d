"""
OrderHandler: drives an approved order through prepare and fill submission.

    ORDER_VALIDATED (PENDING)
        prepare hash recorded      -> re-query it, never resubmit
        standard wants a prepare   -> submit prepare, stay PENDING until it confirms
        no prepare                 -> PENDING -> EXECUTING, submit fill

    ORDER_EXECUTING (EXECUTING, emitted once prepare confirmed)
        fill hash recorded         -> re-query it
        otherwise                  -> generate fill from stored params, submit

The fill is never generated before the order reaches EXECUTING.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Set, Tuple

from solver_engine.core.event_bus import Event, EventBus
from solver_engine.core.interfaces import StandardRegistry
from solver_engine.core.types import ExecutionParams, OrderStatus, TransactionType
from solver_engine.execution.transaction_submitter import TransactionSubmitter
from solver_engine.handlers.base import BaseHandler, stage_failure
from solver_engine.state.order_state_machine import OrderStateMachine


class OrderHandler(BaseHandler):
    SOURCE = "order_handler"

    def __init__(
        self,
        state_machine: OrderStateMachine,
        event_bus: EventBus,
        standards: StandardRegistry,
        submitter: TransactionSubmitter,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(state_machine, event_bus, log_event)
        self.standards = standards
        self.submitter = submitter
        # (order_id, stage) currently being generated/submitted in this process
        self._busy: Set[Tuple[str, TransactionType]] = set()
        self._stats = {
            "prepares_submitted": 0,
            "fills_submitted": 0,
            "requeries": 0,
            "generation_errors": 0,
        }

    async def on_order_validated(self, event: Event) -> None:
        await self.execute(event.data["order_id"], event.data.get("params"))

    async def on_order_executing(self, event: Event) -> None:
        await self.submit_fill(event.data["order_id"])

    async def execute(self, order_id: str, params: Optional[ExecutionParams] = None) -> None:
        key = (order_id, TransactionType.PREPARE)
        if key in self._busy:
            return
        self._busy.add(key)
        try:
            await self._execute(order_id, params)
        finally:
            self._busy.discard(key)

    async def _execute(self, order_id: str, params: Optional[ExecutionParams]) -> None:
        order = await self.state_machine.get_order(order_id)
        if order.status != OrderStatus.PENDING:
            self._log_event("order_execute_not_pending", order_id=order_id, status=order.status.name)
            return

        prepare_ref = order.transactions.get(TransactionType.PREPARE)
        if prepare_ref is not None:
            self._stats["requeries"] += 1
            await self.submitter.track(order_id, TransactionType.PREPARE, prepare_ref)
            return

        try:
            standard = self.standards.require(order.standard)
            prepare_tx = await standard.generate_prepare_transaction(order)
        except Exception as e:
            self._stats["generation_errors"] += 1
            await self.fail_order(
                order_id, stage_failure(TransactionType.PREPARE, e), OrderStatus.PENDING
            )
            return

        if prepare_tx is not None:
            ref = await self.submit_stage(self.submitter, order_id, TransactionType.PREPARE, prepare_tx)
            if ref is not None:
                self._stats["prepares_submitted"] += 1
            return

        if await self.advance(order_id, OrderStatus.PENDING, OrderStatus.EXECUTING, "no prepare required") is None:
            return
        await self.submit_fill(order_id, params)

    async def submit_fill(self, order_id: str, params: Optional[ExecutionParams] = None) -> None:
        key = (order_id, TransactionType.FILL)
        if key in self._busy:
            return
        self._busy.add(key)
        try:
            await self._submit_fill(order_id, params)
        finally:
            self._busy.discard(key)

    async def _submit_fill(self, order_id: str, params: Optional[ExecutionParams]) -> None:
        order = await self.state_machine.get_order(order_id)
        if order.status != OrderStatus.EXECUTING:
            self._log_event("order_fill_not_executing", order_id=order_id, status=order.status.name)
            return

        fill_ref = order.transactions.get(TransactionType.FILL)
        if fill_ref is not None:
            self._stats["requeries"] += 1
            await self.submitter.track(order_id, TransactionType.FILL, fill_ref)
            return

        params = params or order.execution_params
        if params is None:
            await self.fail_order(
                order_id,
                stage_failure(TransactionType.FILL, "no execution parameters"),
                OrderStatus.EXECUTING,
            )
            return

        try:
            standard = self.standards.require(order.standard)
            fill_tx = await standard.generate_fill_transaction(order, params)
        except Exception as e:
            self._stats["generation_errors"] += 1
            await self.fail_order(
                order_id, stage_failure(TransactionType.FILL, e), OrderStatus.EXECUTING
            )
            return

        ref = await self.submit_stage(self.submitter, order_id, TransactionType.FILL, fill_tx)
        if ref is not None:
            self._stats["fills_submitted"] += 1

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
