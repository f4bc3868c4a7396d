"""
Shared plumbing for lifecycle handlers.

Every handler advances orders through the state machine and reports failures
on the event bus the same way: a rejected compare-and-swap means another
flow got there first and is logged as stale, never retried.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from solver_engine.core.event_bus import EventBus, EventType
from solver_engine.core.exceptions import (
    DeliveryError,
    InvalidTransitionError,
    OrderNotFoundError,
)
from solver_engine.core.types import (
    STAGE_STATUS,
    Order,
    OrderStatus,
    Transaction,
    TransactionRef,
    TransactionType,
)
from solver_engine.execution.transaction_submitter import TransactionSubmitter
from solver_engine.state.order_state_machine import OrderStateMachine

log = logging.getLogger("solver")


class BaseHandler:
    SOURCE = "handler"

    def __init__(
        self,
        state_machine: OrderStateMachine,
        event_bus: EventBus,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.state_machine = state_machine
        self.event_bus = event_bus
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    async def advance(
        self,
        order_id: str,
        expected: OrderStatus,
        to_status: OrderStatus,
        reason: Optional[str] = None,
    ) -> Optional[Order]:
        """CAS transition; returns None (and logs) when the order moved on."""
        try:
            return await self.state_machine.transition(order_id, expected, to_status, reason)
        except InvalidTransitionError as e:
            self._log_event(
                "handler_stale_transition",
                handler=self.SOURCE,
                order_id=order_id,
                expected=expected.name,
                to_state=to_status.name,
                error=str(e),
            )
            return None

    async def fail_order(
        self,
        order_id: str,
        reason: str,
        expected: Optional[OrderStatus] = None,
    ) -> bool:
        """Move the order to FAILED and announce it. False if it already moved on."""
        try:
            await self.state_machine.fail(order_id, reason, expected)
        except (InvalidTransitionError, OrderNotFoundError) as e:
            self._log_event(
                "handler_stale_failure",
                handler=self.SOURCE,
                order_id=order_id,
                reason=reason,
                error=str(e),
            )
            return False
        await self.event_bus.emit(
            EventType.ORDER_FAILED,
            source=self.SOURCE,
            order_id=order_id,
            reason=reason,
        )
        return True

    async def submit_stage(
        self,
        submitter: TransactionSubmitter,
        order_id: str,
        tx_type: TransactionType,
        tx: Transaction,
    ) -> Optional[TransactionRef]:
        """Submit a stage transaction; a delivery rejection fails the order."""
        try:
            return await submitter.submit(order_id, tx_type, tx)
        except DeliveryError as e:
            await self.fail_order(order_id, stage_failure(tx_type, e), STAGE_STATUS[tx_type])
            return None


def stage_failure(tx_type: TransactionType, error: object) -> str:
    """Failure reason for a stage: "<stage>: <error>"."""
    return f"{tx_type.value}: {error}"
