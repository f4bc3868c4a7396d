"""
Order State Machine - the single authority over persisted order status.

Provides:
- Explicit lifecycle: PENDING -> EXECUTING -> EXECUTED -> POST_FILLED ->
  SETTLED -> PRE_CLAIMED -> FINALIZED, plus FAILED from any non-terminal state
- Compare-and-swap transitions (caller states the status it expects)
- Artifact attachment (transaction hashes, fill proof, execution params)
  without status change
- Transaction hash -> order reverse index
- Audit trail of state changes on every order

Every handler funnels status changes through this class, so two handlers
racing on the same order cannot both advance it: the loser gets
InvalidTransitionError and must re-read status before doing anything else.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from solver_engine.core.exceptions import (
    InvalidTransitionError,
    OrderExistsError,
    OrderNotFoundError,
)
from solver_engine.core.interfaces import StorageBackend
from solver_engine.core.types import (
    STATUS_SEQUENCE,
    TERMINAL_STATUSES,
    ExecutionParams,
    FillProof,
    Order,
    OrderStatus,
    StateTransition,
    TransactionRef,
    TransactionType,
)
from solver_engine.core.utils import now_ms
from solver_engine.state.store import ORDERS, TX_INDEX

log = logging.getLogger("solver")


def _build_transitions() -> Dict[OrderStatus, List[OrderStatus]]:
    table: Dict[OrderStatus, List[OrderStatus]] = {}
    for i, status in enumerate(STATUS_SEQUENCE):
        if status in TERMINAL_STATUSES:
            table[status] = []
        else:
            table[status] = [STATUS_SEQUENCE[i + 1], OrderStatus.FAILED]
    table[OrderStatus.FAILED] = []
    return table


# Valid state transitions: the next status in sequence, or FAILED
VALID_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = _build_transitions()


def is_valid_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, [])


StateChangeCallback = Callable[[Order, OrderStatus, OrderStatus], None]


class OrderStateMachine:
    """
    Persists orders and guards their status transitions.

    All operations are atomic per order (one asyncio.Lock per order id,
    released once the order reaches a terminal status).
    Cross-order atomicity is neither required nor provided.
    """

    def __init__(
        self,
        storage: StorageBackend,
        log_event: Optional[Callable[..., None]] = None,
        on_state_change: Optional[StateChangeCallback] = None,
    ) -> None:
        """
        Initialize OrderStateMachine.

        Args:
            storage: Keyed store for orders and the tx-hash index
            log_event: Callback for structured logging
            on_state_change: Callback when any order changes status
        """
        self._storage = storage
        self._log_event = log_event or self._default_log
        self._on_state_change = on_state_change
        self._locks: Dict[str, asyncio.Lock] = {}

        self._stats = {
            "total_created": 0,
            "total_finalized": 0,
            "total_failed": 0,
            "invalid_transitions_blocked": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def _lock_for(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    async def _load(self, order_id: str) -> Order:
        raw = await self._storage.get(ORDERS, order_id)
        if raw is None:
            raise OrderNotFoundError(order_id)
        return Order.from_dict(raw)

    async def _save(self, order: Order) -> None:
        order.updated_at_ms = now_ms()
        await self._storage.set(ORDERS, order.id, order.to_dict())

    # -------------------------------------------------------------------------
    # Creation / lookup
    # -------------------------------------------------------------------------

    async def store_order(self, order: Order) -> Order:
        """
        Persist a new order.

        Raises:
            OrderExistsError: an order with this id is already stored
        """
        async with self._lock_for(order.id):
            stored = await self._storage.set_if_absent(ORDERS, order.id, order.to_dict())
            if not stored:
                raise OrderExistsError(order.id)
        self._stats["total_created"] += 1
        self._log_event(
            "order_stored",
            order_id=order.id,
            standard=order.standard,
            status=order.status.name,
        )
        return order

    async def get_order(self, order_id: str) -> Order:
        return await self._load(order_id)

    async def exists(self, order_id: str) -> bool:
        return await self._storage.exists(ORDERS, order_id)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        to_status: OrderStatus,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Move an order from `expected` to `to_status`.

        Raises:
            OrderNotFoundError: unknown order
            InvalidTransitionError: persisted status != expected, or
                to_status is not a legal successor
        """
        async with self._lock_for(order_id):
            order = await self._load(order_id)
            from_status = order.status

            if from_status != expected or not is_valid_transition(from_status, to_status):
                self._stats["invalid_transitions_blocked"] += 1
                self._log_event(
                    "order_state_invalid_transition",
                    order_id=order_id,
                    from_state=from_status.name,
                    expected=expected.name,
                    to_state=to_status.name,
                    reason=reason,
                )
                raise InvalidTransitionError(order_id, from_status, to_status, expected)

            self._apply(order, to_status, reason)
            await self._save(order)

        self._after_transition(order, from_status, to_status, reason)
        return order

    async def fail(
        self,
        order_id: str,
        reason: str,
        expected: Optional[OrderStatus] = None,
    ) -> Order:
        """
        Move a non-terminal order to FAILED.

        Args:
            order_id: Order to fail
            reason: Failure reason recorded on the order
            expected: If given, fail only when the order still has this status

        Raises:
            InvalidTransitionError: order already terminal, or status mismatch
        """
        async with self._lock_for(order_id):
            order = await self._load(order_id)
            from_status = order.status

            if from_status.is_terminal or (expected is not None and from_status != expected):
                self._stats["invalid_transitions_blocked"] += 1
                self._log_event(
                    "order_state_invalid_transition",
                    order_id=order_id,
                    from_state=from_status.name,
                    expected=expected.name if expected else None,
                    to_state=OrderStatus.FAILED.name,
                    reason=reason,
                )
                raise InvalidTransitionError(
                    order_id, from_status, OrderStatus.FAILED, expected
                )

            order.failure_reason = reason
            self._apply(order, OrderStatus.FAILED, reason)
            await self._save(order)

        self._after_transition(order, from_status, OrderStatus.FAILED, reason)
        return order

    def _apply(self, order: Order, to_status: OrderStatus, reason: Optional[str]) -> None:
        order.history.append(
            StateTransition(
                from_status=order.status,
                to_status=to_status,
                timestamp_ms=now_ms(),
                reason=reason,
            )
        )
        order.status = to_status

    def _after_transition(
        self,
        order: Order,
        from_status: OrderStatus,
        to_status: OrderStatus,
        reason: Optional[str],
    ) -> None:
        if to_status == OrderStatus.FINALIZED:
            self._stats["total_finalized"] += 1
        elif to_status == OrderStatus.FAILED:
            self._stats["total_failed"] += 1
        if to_status.is_terminal:
            # No further transitions; drop the per-order lock
            self._locks.pop(order.id, None)

        self._log_event(
            "order_state_transition",
            order_id=order.id,
            from_state=from_status.name,
            to_state=to_status.name,
            reason=reason,
        )

        if self._on_state_change:
            try:
                self._on_state_change(order, from_status, to_status)
            except Exception as e:
                self._log_event(
                    "order_state_callback_error",
                    error=str(e),
                    order_id=order.id,
                )

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    async def attach_transaction(
        self,
        order_id: str,
        tx_type: TransactionType,
        ref: TransactionRef,
    ) -> Order:
        """Record a stage's transaction hash and index it for reverse lookup."""
        async with self._lock_for(order_id):
            order = await self._load(order_id)
            order.transactions[tx_type] = ref
            await self._storage.set(
                TX_INDEX,
                ref.tx_hash,
                {
                    "order_id": order_id,
                    "tx_type": tx_type.value,
                    "chain_id": ref.chain_id,
                },
            )
            await self._save(order)
        log.debug("order_tx_attached order=%s type=%s hash=%s", order_id, tx_type.value, ref.tx_hash)
        return order

    async def attach_proof(self, order_id: str, proof: FillProof) -> Order:
        async with self._lock_for(order_id):
            order = await self._load(order_id)
            order.fill_proof = proof
            await self._save(order)
        self._log_event("order_proof_attached", order_id=order_id, tx_hash=proof.tx_hash)
        return order

    async def attach_execution_params(self, order_id: str, params: ExecutionParams) -> Order:
        async with self._lock_for(order_id):
            order = await self._load(order_id)
            order.execution_params = params
            await self._save(order)
        return order

    async def order_for_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """
        Reverse lookup of a transaction hash.

        Returns:
            {"order_id", "tx_type" (TransactionType), "chain_id"} or None
        """
        entry = await self._storage.get(TX_INDEX, tx_hash)
        if entry is None:
            return None
        return {
            "order_id": entry["order_id"],
            "tx_type": TransactionType(entry["tx_type"]),
            "chain_id": int(entry["chain_id"]),
        }

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_orders_by_status(self, status: OrderStatus) -> List[Order]:
        raw = await self._storage.list(ORDERS, lambda d: d.get("status") == status.value)
        return [Order.from_dict(d) for d in raw]

    async def get_active_orders(self) -> List[Order]:
        """Get all non-terminal orders, oldest first."""
        terminal = {s.value for s in TERMINAL_STATUSES}
        raw = await self._storage.list(ORDERS, lambda d: d.get("status") not in terminal)
        orders = [Order.from_dict(d) for d in raw]
        orders.sort(key=lambda o: o.created_at_ms)
        return orders

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
