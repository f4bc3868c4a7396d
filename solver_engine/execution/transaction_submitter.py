"""
TransactionSubmitter: hands stage transactions to the delivery collaborator
and turns their outcomes into lifecycle events.

Flow:
    submit(order_id, tx_type, tx)
      -> delivery.submit(tx)                  (hash)
      -> state_machine.attach_transaction    (hash recorded before any wait)
      -> TRANSACTION_PENDING
      -> background wait_for_confirmation    -> TRANSACTION_CONFIRMED / TRANSACTION_FAILED

track(order_id, tx_type, ref) is the re-query path used instead of
resubmission: a receipt that already exists is published immediately,
otherwise the confirmation wait is resumed.

Nothing here resubmits. Retry and nonce management belong to delivery.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from solver_engine.core.event_bus import EventBus, EventType
from solver_engine.core.exceptions import DeliveryError
from solver_engine.core.interfaces import DeliveryService
from solver_engine.core.types import (
    Transaction,
    TransactionReceipt,
    TransactionRef,
    TransactionType,
)
from solver_engine.state.order_state_machine import OrderStateMachine

log = logging.getLogger("solver")


@dataclass
class TransactionSubmitterConfig:
    """Configuration for TransactionSubmitter."""
    confirmations: int = 1
    log_event_callback: Optional[Callable[..., None]] = None


class TransactionSubmitter:
    """
    Submission and confirmation tracking for every lifecycle stage.

    One background task per in-flight transaction hash. stop() cancels them;
    a cancelled wait publishes nothing, so recovery re-queries on restart.
    """

    SOURCE = "delivery"

    def __init__(
        self,
        delivery: DeliveryService,
        state_machine: OrderStateMachine,
        event_bus: EventBus,
        config: Optional[TransactionSubmitterConfig] = None,
    ) -> None:
        self.delivery = delivery
        self.state_machine = state_machine
        self.event_bus = event_bus
        self.config = config or TransactionSubmitterConfig()
        self._log_event = self.config.log_event_callback or self._default_log

        self._waits: Dict[str, asyncio.Task] = {}
        self._stats = {
            "submitted": 0,
            "submit_errors": 0,
            "confirmed": 0,
            "failed": 0,
            "requeried": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    async def submit(self, order_id: str, tx_type: TransactionType, tx: Transaction) -> TransactionRef:
        """
        Submit a stage transaction and start waiting for its confirmation.

        Raises:
            DeliveryError: delivery rejected the transaction (no hash exists)
        """
        try:
            tx_hash = await self.delivery.submit(tx)
        except Exception as e:
            self._stats["submit_errors"] += 1
            self._log_event(
                "tx_submit_error",
                order_id=order_id,
                tx_type=tx_type.value,
                chain_id=tx.chain_id,
                error=str(e),
            )
            raise DeliveryError(str(e)) from e

        ref = TransactionRef(tx_hash=tx_hash, chain_id=tx.chain_id)
        await self.state_machine.attach_transaction(order_id, tx_type, ref)
        self._stats["submitted"] += 1

        self._log_event(
            "tx_submitted",
            order_id=order_id,
            tx_type=tx_type.value,
            chain_id=tx.chain_id,
            tx_hash=tx_hash,
        )
        await self.event_bus.emit(
            EventType.TRANSACTION_PENDING,
            source=self.SOURCE,
            order_id=order_id,
            tx_hash=tx_hash,
            tx_type=tx_type,
            chain_id=tx.chain_id,
        )
        self._spawn_wait(order_id, tx_type, ref)
        return ref

    async def track(self, order_id: str, tx_type: TransactionType, ref: TransactionRef) -> None:
        """Re-query a recorded transaction instead of resubmitting it."""
        self._stats["requeried"] += 1
        try:
            receipt = await self.delivery.get_receipt(ref.tx_hash, ref.chain_id)
        except Exception as e:
            self._log_event(
                "tx_requery_error",
                order_id=order_id,
                tx_type=tx_type.value,
                tx_hash=ref.tx_hash,
                error=str(e),
            )
            receipt = None

        if receipt is not None:
            await self._publish_outcome(order_id, tx_type, ref, receipt)
        else:
            self._spawn_wait(order_id, tx_type, ref)

    def _spawn_wait(self, order_id: str, tx_type: TransactionType, ref: TransactionRef) -> None:
        if ref.tx_hash in self._waits:
            return
        task = asyncio.create_task(self._wait(order_id, tx_type, ref))
        self._waits[ref.tx_hash] = task
        task.add_done_callback(lambda _t, h=ref.tx_hash: self._waits.pop(h, None))

    async def _wait(self, order_id: str, tx_type: TransactionType, ref: TransactionRef) -> None:
        try:
            receipt = await self.delivery.wait_for_confirmation(
                ref.tx_hash, ref.chain_id, self.config.confirmations
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats["failed"] += 1
            self._log_event(
                "tx_confirmation_error",
                order_id=order_id,
                tx_type=tx_type.value,
                tx_hash=ref.tx_hash,
                error=str(e),
            )
            await self.event_bus.emit(
                EventType.TRANSACTION_FAILED,
                source=self.SOURCE,
                order_id=order_id,
                tx_hash=ref.tx_hash,
                tx_type=tx_type,
                chain_id=ref.chain_id,
                receipt=None,
                error=str(e),
            )
            return
        await self._publish_outcome(order_id, tx_type, ref, receipt)

    async def _publish_outcome(
        self,
        order_id: str,
        tx_type: TransactionType,
        ref: TransactionRef,
        receipt: TransactionReceipt,
    ) -> None:
        if receipt.success:
            self._stats["confirmed"] += 1
            await self.event_bus.emit(
                EventType.TRANSACTION_CONFIRMED,
                source=self.SOURCE,
                order_id=order_id,
                tx_hash=ref.tx_hash,
                tx_type=tx_type,
                chain_id=ref.chain_id,
                receipt=receipt,
            )
        else:
            self._stats["failed"] += 1
            await self.event_bus.emit(
                EventType.TRANSACTION_FAILED,
                source=self.SOURCE,
                order_id=order_id,
                tx_hash=ref.tx_hash,
                tx_type=tx_type,
                chain_id=ref.chain_id,
                receipt=receipt,
                error=receipt.error or "transaction reverted",
            )

    @property
    def pending(self) -> int:
        return len(self._waits)

    async def stop(self) -> None:
        """Cancel all confirmation waits."""
        tasks = list(self._waits.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._waits.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "pending": len(self._waits)}
