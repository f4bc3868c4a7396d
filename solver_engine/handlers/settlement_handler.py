"""
SettlementHandler: post-fill, pre-claim and batched claim stages.

    POST_FILL_READY (EXECUTED)
        settlement returns a tx  -> submit; confirmation moves to POST_FILLED
        settlement returns None  -> EXECUTED -> POST_FILLED, MONITORING_START

    PRE_CLAIM_READY (SETTLED)
        settlement returns a tx  -> submit; confirmation moves to PRE_CLAIMED
        settlement returns None  -> SETTLED -> PRE_CLAIMED, CLAIM_READY

    CLAIM_READY (PRE_CLAIMED)
        enqueue; batches flush at claim_batch_size or after the batch window.
        Claims in a batch are generated and submitted concurrently and each
        order succeeds or fails on its own.

A recorded stage hash is always re-queried instead of resubmitted.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from solver_engine.core.event_bus import Event, EventBus, EventType
from solver_engine.core.exceptions import SettlementError
from solver_engine.core.interfaces import (
    DeliveryService,
    SettlementRegistry,
    SettlementService,
    StandardRegistry,
)
from solver_engine.core.types import (
    Order,
    OrderStatus,
    TransactionReceipt,
    TransactionType,
)
from solver_engine.execution.transaction_submitter import TransactionSubmitter
from solver_engine.handlers.base import BaseHandler, stage_failure
from solver_engine.state.order_state_machine import OrderStateMachine


class SettlementHandler(BaseHandler):
    SOURCE = "settlement_handler"

    def __init__(
        self,
        state_machine: OrderStateMachine,
        event_bus: EventBus,
        standards: StandardRegistry,
        settlements: SettlementRegistry,
        delivery: DeliveryService,
        submitter: TransactionSubmitter,
        claim_batch_size: int = 10,
        claim_batch_window_sec: float = 5.0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(state_machine, event_bus, log_event)
        self.standards = standards
        self.settlements = settlements
        self.delivery = delivery
        self.submitter = submitter
        self.claim_batch_size = max(1, claim_batch_size)
        self.claim_batch_window_sec = claim_batch_window_sec

        self._claim_queue: List[str] = []
        self._flush_task: Optional[asyncio.Task] = None

        self._stats = {
            "post_fills_submitted": 0,
            "post_fills_skipped": 0,
            "pre_claims_submitted": 0,
            "pre_claims_skipped": 0,
            "claims_submitted": 0,
            "claim_batches": 0,
        }

    def _settlement_for(self, order: Order) -> SettlementService:
        settlement = self.settlements.get(order.settlement)
        if settlement is None:
            raise SettlementError(f"no settlement registered for {order.settlement!r}")
        return settlement

    # -------------------------------------------------------------------------
    # Post-fill
    # -------------------------------------------------------------------------

    async def on_post_fill_ready(self, event: Event) -> None:
        await self.handle_post_fill_ready(event.data["order_id"], event.data.get("receipt"))

    async def handle_post_fill_ready(
        self,
        order_id: str,
        fill_receipt: Optional[TransactionReceipt] = None,
    ) -> None:
        order = await self.state_machine.get_order(order_id)
        if order.status != OrderStatus.EXECUTED:
            self._log_event("post_fill_not_executed", order_id=order_id, status=order.status.name)
            return

        ref = order.transactions.get(TransactionType.POST_FILL)
        if ref is not None:
            await self.submitter.track(order_id, TransactionType.POST_FILL, ref)
            return

        try:
            settlement = self._settlement_for(order)
            if fill_receipt is None:
                fill_receipt = await self._fill_receipt(order)
            tx = await settlement.generate_post_fill_transaction(order, fill_receipt)
        except Exception as e:
            await self.fail_order(
                order_id, stage_failure(TransactionType.POST_FILL, e), OrderStatus.EXECUTED
            )
            return

        if tx is None:
            updated = await self.advance(
                order_id, OrderStatus.EXECUTED, OrderStatus.POST_FILLED, "post-fill not required"
            )
            if updated is None:
                return
            self._stats["post_fills_skipped"] += 1
            await self.event_bus.emit(
                EventType.MONITORING_START,
                source=self.SOURCE,
                order_id=order_id,
                fill_tx_hash=updated.tx_hash(TransactionType.FILL),
            )
            return

        if await self.submit_stage(self.submitter, order_id, TransactionType.POST_FILL, tx):
            self._stats["post_fills_submitted"] += 1

    async def _fill_receipt(self, order: Order) -> TransactionReceipt:
        ref = order.transactions.get(TransactionType.FILL)
        if ref is None:
            raise SettlementError("no fill transaction recorded")
        receipt = await self.delivery.get_receipt(ref.tx_hash, ref.chain_id)
        if receipt is None:
            raise SettlementError(f"fill receipt unavailable for {ref.tx_hash}")
        return receipt

    # -------------------------------------------------------------------------
    # Pre-claim
    # -------------------------------------------------------------------------

    async def on_pre_claim_ready(self, event: Event) -> None:
        await self.handle_pre_claim_ready(event.data["order_id"])

    async def handle_pre_claim_ready(self, order_id: str) -> None:
        order = await self.state_machine.get_order(order_id)
        if order.status != OrderStatus.SETTLED:
            self._log_event("pre_claim_not_settled", order_id=order_id, status=order.status.name)
            return

        ref = order.transactions.get(TransactionType.PRE_CLAIM)
        if ref is not None:
            await self.submitter.track(order_id, TransactionType.PRE_CLAIM, ref)
            return

        try:
            if order.fill_proof is None:
                raise SettlementError("no fill proof attached")
            settlement = self._settlement_for(order)
            tx = await settlement.generate_pre_claim_transaction(order, order.fill_proof)
        except Exception as e:
            await self.fail_order(
                order_id, stage_failure(TransactionType.PRE_CLAIM, e), OrderStatus.SETTLED
            )
            return

        if tx is None:
            updated = await self.advance(
                order_id, OrderStatus.SETTLED, OrderStatus.PRE_CLAIMED, "pre-claim not required"
            )
            if updated is None:
                return
            self._stats["pre_claims_skipped"] += 1
            await self.event_bus.emit(EventType.CLAIM_READY, source=self.SOURCE, order_id=order_id)
            return

        if await self.submit_stage(self.submitter, order_id, TransactionType.PRE_CLAIM, tx):
            self._stats["pre_claims_submitted"] += 1

    # -------------------------------------------------------------------------
    # Claim batching
    # -------------------------------------------------------------------------

    async def on_claim_ready(self, event: Event) -> None:
        await self.enqueue_claim(event.data["order_id"])

    async def enqueue_claim(self, order_id: str) -> None:
        if order_id in self._claim_queue:
            return
        self._claim_queue.append(order_id)
        if len(self._claim_queue) >= self.claim_batch_size:
            await self.flush_claims()
        elif self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_after_window())

    async def _flush_after_window(self) -> None:
        await asyncio.sleep(self.claim_batch_window_sec)
        self._flush_task = None
        await self.flush_claims()

    async def flush_claims(self) -> Dict[str, bool]:
        """Process everything queued now."""
        timer = self._flush_task
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        self._flush_task = None

        batch, self._claim_queue = self._claim_queue, []
        if not batch:
            return {}
        return await self.process_claim_batch(batch)

    async def process_claim_batch(self, order_ids: List[str]) -> Dict[str, bool]:
        """
        Generate and submit claims for a batch.

        Returns:
            order_id -> True if a claim was submitted or re-queried
        """
        self._stats["claim_batches"] += 1
        self._log_event("claim_batch_start", size=len(order_ids), order_ids=order_ids)
        results = await asyncio.gather(
            *(self._claim(order_id) for order_id in order_ids),
            return_exceptions=True,
        )

        outcome: Dict[str, bool] = {}
        for order_id, result in zip(order_ids, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                self._log_event("claim_error", order_id=order_id, error=str(result))
                await self.fail_order(
                    order_id, stage_failure(TransactionType.CLAIM, result), OrderStatus.PRE_CLAIMED
                )
                outcome[order_id] = False
            else:
                outcome[order_id] = result
        return outcome

    async def _claim(self, order_id: str) -> bool:
        order = await self.state_machine.get_order(order_id)
        if order.status != OrderStatus.PRE_CLAIMED:
            self._log_event("claim_not_pre_claimed", order_id=order_id, status=order.status.name)
            return False

        ref = order.transactions.get(TransactionType.CLAIM)
        if ref is not None:
            await self.submitter.track(order_id, TransactionType.CLAIM, ref)
            return True

        try:
            if order.fill_proof is None:
                raise SettlementError("no fill proof attached")
            standard = self.standards.require(order.standard)
            tx = await standard.generate_claim_transaction(order, order.fill_proof)
        except Exception as e:
            await self.fail_order(
                order_id, stage_failure(TransactionType.CLAIM, e), OrderStatus.PRE_CLAIMED
            )
            return False

        if await self.submit_stage(self.submitter, order_id, TransactionType.CLAIM, tx) is None:
            return False
        self._stats["claims_submitted"] += 1
        return True

    @property
    def queued_claims(self) -> List[str]:
        return list(self._claim_queue)

    async def stop(self) -> None:
        """Cancel the batch timer. Queued claims are picked up by recovery."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
            self._flush_task = None
        self._claim_queue.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "queued_claims": len(self._claim_queue)}
