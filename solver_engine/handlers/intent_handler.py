"""
IntentHandler: turns discovered intents into evaluated orders.

Flow per intent:
    1. Already seen?             -> drop as a duplicate (idempotent re-discovery)
    2. Reserve + persist intent
    3. Standard validates and materializes the Order (protocol-defined id)
    4. Persist Order at PENDING, record its id on the intent
    5. evaluate(): context -> cost -> profitability -> strategy

An intent counts as seen once it has an order id or a rejection recorded.
A validation failure records the rejection. Any other error in steps 3-4
releases the reservation so a later delivery of the same intent is
processed again. So is a reservation left behind by a crash.

evaluate() always emits exactly one of ORDER_VALIDATED, ORDER_REJECTED,
ORDER_SKIPPED or ORDER_DEFERRED. It is also the re-entry point for deferred
orders and for recovery of PENDING orders with nothing submitted.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional, Set

from solver_engine.core.event_bus import Event, EventBus, EventType
from solver_engine.core.exceptions import OrderExistsError, UnsupportedStandardError, ValidationError
from solver_engine.core.interfaces import (
    DeliveryService,
    OrderIdCallback,
    StandardRegistry,
    StorageBackend,
)
from solver_engine.core.types import DecisionKind, Intent, Order, OrderStatus
from solver_engine.execution.context_builder import ContextBuilder
from solver_engine.execution.profitability import ProfitabilityEvaluator
from solver_engine.handlers.base import BaseHandler
from solver_engine.state.order_state_machine import OrderStateMachine
from solver_engine.state.store import INTENTS
from solver_engine.strategy.strategy import ExecutionStrategy


class IntentHandler(BaseHandler):
    SOURCE = "intent_handler"

    def __init__(
        self,
        state_machine: OrderStateMachine,
        event_bus: EventBus,
        storage: StorageBackend,
        standards: StandardRegistry,
        context_builder: ContextBuilder,
        evaluator: ProfitabilityEvaluator,
        strategy: ExecutionStrategy,
        delivery: DeliveryService,
        solver_address: str,
        evaluation_retry_seconds: float = 60.0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        """
        Initialize IntentHandler.

        Args:
            evaluation_retry_seconds: Defer used when a collaborator fails
                while the order is being evaluated
        """
        super().__init__(state_machine, event_bus, log_event)
        self.storage = storage
        self.standards = standards
        self.context_builder = context_builder
        self.evaluator = evaluator
        self.strategy = strategy
        self.delivery = delivery
        self.solver_address = solver_address
        self.evaluation_retry_seconds = evaluation_retry_seconds

        self._deferred: Dict[str, asyncio.Task] = {}
        self._inflight: Set[str] = set()
        self._stats = {
            "intents_received": 0,
            "intents_duplicate": 0,
            "intents_rejected": 0,
            "intake_errors": 0,
            "orders_created": 0,
            "validated": 0,
            "rejected": 0,
            "skipped": 0,
            "deferred": 0,
        }

    # -------------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------------

    async def on_intent_discovered(self, event: Event) -> None:
        await self.handle(
            event.data["intent"],
            order_id_callback=event.data.get("order_id_callback"),
        )

    async def handle(
        self,
        intent: Intent,
        order_id_callback: Optional[OrderIdCallback] = None,
    ) -> Optional[Order]:
        """
        Process one discovered intent.

        Returns:
            The created order, or None when the intent was a duplicate,
            failed validation or hit a collaborator error
        """
        self._stats["intents_received"] += 1

        record = await self.storage.get(INTENTS, intent.id)
        if record is not None and ("order_id" in record or "rejected" in record):
            self._duplicate(intent, "already_processed")
            return None
        if intent.id in self._inflight:
            self._duplicate(intent, "in_flight")
            return None

        self._inflight.add(intent.id)
        try:
            if record is None:
                if not await self.storage.set_if_absent(INTENTS, intent.id, intent.to_dict()):
                    self._duplicate(intent, "reservation_race")
                    return None
                record = intent.to_dict()
            else:
                # Reserved by an earlier run that never stored its order
                self._log_event("intent_reservation_resumed", intent_id=intent.id, source=intent.source)
            return await self._intake(intent, record, order_id_callback)
        finally:
            self._inflight.discard(intent.id)

    async def _intake(
        self,
        intent: Intent,
        record: Dict[str, Any],
        order_id_callback: Optional[OrderIdCallback],
    ) -> Optional[Order]:
        try:
            standard = self.standards.require(intent.standard)
            order = await standard.validate_and_create_order(
                intent.order_bytes,
                intent.data,
                intent.lock_type,
                order_id_callback or self.delivery.call,
                self.solver_address,
            )
        except ValidationError as e:
            await self.storage.set(INTENTS, intent.id, {**record, "rejected": str(e)})
            await self._reject_intent(intent, e)
            return None
        except Exception as e:
            # Transient: release the reservation so re-discovery retries it
            await self.storage.delete(INTENTS, intent.id)
            self._stats["intake_errors"] += 1
            self._log_event(
                "intent_intake_error",
                intent_id=intent.id,
                standard=intent.standard,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        try:
            await self.state_machine.store_order(order)
        except OrderExistsError as e:
            await self.storage.set(INTENTS, intent.id, {**record, "order_id": order.id})
            self._stats["intents_duplicate"] += 1
            self._log_event("intent_order_exists", intent_id=intent.id, order_id=order.id, error=str(e))
            return None
        await self.storage.set(INTENTS, intent.id, {**record, "order_id": order.id})

        self._stats["orders_created"] += 1
        self._log_event(
            "intent_order_created",
            intent_id=intent.id,
            order_id=order.id,
            standard=order.standard,
            source=intent.source,
        )
        await self.evaluate(order.id)
        return order

    def _duplicate(self, intent: Intent, reason: str) -> None:
        self._stats["intents_duplicate"] += 1
        self._log_event("intent_duplicate", intent_id=intent.id, source=intent.source, reason=reason)

    async def _reject_intent(self, intent: Intent, error: Exception) -> None:
        self._stats["intents_rejected"] += 1
        reason = str(error)
        self._log_event(
            "intent_rejected",
            intent_id=intent.id,
            standard=intent.standard,
            reason=reason,
            error_type=type(error).__name__,
        )
        await self.event_bus.emit(
            EventType.INTENT_REJECTED,
            source=self.SOURCE,
            correlation_id=intent.id,
            intent_id=intent.id,
            reason=reason,
            unsupported=isinstance(error, UnsupportedStandardError),
        )

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    async def evaluate(self, order_id: str) -> Optional[EventType]:
        """
        Evaluate a PENDING order and emit the outcome.

        Returns:
            The event type emitted, or None if the order is no longer PENDING
        """
        order = await self.state_machine.get_order(order_id)
        if order.status != OrderStatus.PENDING:
            self._log_event("evaluate_not_pending", order_id=order_id, status=order.status.name)
            return None

        try:
            standard = self.standards.require(order.standard)
            context = await self.context_builder.build(order)
            estimate = await self.evaluator.estimate_cost(order, standard, context)
        except Exception as e:
            # Pricing or estimation outage: transient, try again later
            return await self._defer(
                order_id,
                self.evaluation_retry_seconds,
                f"evaluation error: {e}",
            )

        result = self.evaluator.check(estimate)
        if not result.accepted:
            self._stats["rejected"] += 1
            self._log_event(
                "order_rejected",
                order_id=order_id,
                margin_pct=result.margin_pct,
                min_pct=result.min_profitability_pct,
                reason=result.reason,
            )
            await self.event_bus.emit(
                EventType.ORDER_REJECTED,
                source=self.SOURCE,
                order_id=order_id,
                reason=result.reason,
                margin_pct=result.margin_pct,
            )
            return EventType.ORDER_REJECTED

        try:
            decision = self.strategy.should_execute(order, context)
        except Exception as e:
            return await self._defer(
                order_id,
                self.evaluation_retry_seconds,
                f"strategy error: {e}",
            )

        if decision.kind == DecisionKind.EXECUTE:
            await self.state_machine.attach_execution_params(order_id, decision.params)
            self._stats["validated"] += 1
            self._log_event(
                "order_validated",
                order_id=order_id,
                margin_pct=result.margin_pct,
                gas_price=decision.params.gas_price,
            )
            await self.event_bus.emit(
                EventType.ORDER_VALIDATED,
                source=self.SOURCE,
                order_id=order_id,
                params=decision.params,
                margin_pct=result.margin_pct,
            )
            return EventType.ORDER_VALIDATED

        if decision.kind == DecisionKind.SKIP:
            self._stats["skipped"] += 1
            self._log_event("order_skipped", order_id=order_id, reason=decision.reason, **decision.details)
            await self.event_bus.emit(
                EventType.ORDER_SKIPPED,
                source=self.SOURCE,
                order_id=order_id,
                reason=decision.reason,
                details=decision.details,
            )
            return EventType.ORDER_SKIPPED

        return await self._defer(order_id, decision.defer_seconds, decision.reason)

    async def _defer(self, order_id: str, seconds: float, reason: Optional[str]) -> EventType:
        self._stats["deferred"] += 1
        self._log_event("order_deferred", order_id=order_id, defer_seconds=seconds, reason=reason)
        self._schedule_reevaluation(order_id, seconds)
        await self.event_bus.emit(
            EventType.ORDER_DEFERRED,
            source=self.SOURCE,
            order_id=order_id,
            defer_seconds=seconds,
            reason=reason,
        )
        return EventType.ORDER_DEFERRED

    def _schedule_reevaluation(self, order_id: str, seconds: float) -> None:
        existing = self._deferred.get(order_id)
        if existing is not None and existing is not asyncio.current_task():
            existing.cancel()
        task = asyncio.create_task(self._reevaluate_later(order_id, seconds))
        self._deferred[order_id] = task

        def _done(t: asyncio.Task, oid: str = order_id) -> None:
            if self._deferred.get(oid) is t:
                del self._deferred[oid]

        task.add_done_callback(_done)

    async def _reevaluate_later(self, order_id: str, seconds: float) -> None:
        await asyncio.sleep(seconds)
        try:
            await self.evaluate(order_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log_event("reevaluate_error", order_id=order_id, error=str(e))

    def cancel_deferred(self, order_id: str) -> bool:
        task = self._deferred.pop(order_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    @property
    def deferred_orders(self) -> list:
        return list(self._deferred)

    async def stop(self) -> None:
        """Cancel pending re-evaluations (shutdown)."""
        tasks = list(self._deferred.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._deferred.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "deferred_pending": len(self._deferred)}
