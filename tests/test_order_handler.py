"""
Tests for OrderHandler: prepare/fill submission and idempotent re-entry.
"""

import pytest

from conftest import STANDARD, FakeStandard, make_order, wait_for

from solver_engine.core.event_bus import EventType
from solver_engine.core.interfaces import StandardRegistry
from solver_engine.core.types import ExecutionParams, OrderStatus, TransactionType
from solver_engine.handlers.order_handler import OrderHandler

PARAMS = ExecutionParams(gas_price=7, priority_fee=1)


def _handler(state_machine, bus, submitter, standard):
    return OrderHandler(state_machine, bus, StandardRegistry({STANDARD: standard}), submitter)


class TestOrderHandler:
    @pytest.mark.asyncio
    async def test_no_prepare_goes_straight_to_fill(self, state_machine, bus, submitter, standard, delivery):
        handler = _handler(state_machine, bus, submitter, standard)
        await state_machine.store_order(make_order("o1", execution_params=PARAMS))

        await handler.execute("o1", PARAMS)

        order = await state_machine.get_order("o1")
        assert order.status == OrderStatus.EXECUTING
        assert order.history[-1].reason == "no prepare required"
        assert delivery.types_submitted() == ["fill"]
        assert standard.fill_params == [PARAMS]
        assert order.tx_hash(TransactionType.FILL) is not None

    @pytest.mark.asyncio
    async def test_prepare_keeps_order_pending(self, state_machine, bus, submitter, delivery):
        standard = FakeStandard(needs_prepare=True)
        handler = _handler(state_machine, bus, submitter, standard)
        await state_machine.store_order(make_order("o1", execution_params=PARAMS))

        await handler.execute("o1", PARAMS)

        order = await state_machine.get_order("o1")
        assert order.status == OrderStatus.PENDING
        assert order.tx_hash(TransactionType.PREPARE) is not None
        assert delivery.types_submitted() == ["prepare"]
        assert standard.fill_params == []

    @pytest.mark.asyncio
    async def test_recorded_prepare_is_requeried_not_resubmitted(self, state_machine, bus, submitter, delivery):
        standard = FakeStandard(needs_prepare=True)
        handler = _handler(state_machine, bus, submitter, standard)
        await state_machine.store_order(make_order("o1", execution_params=PARAMS))

        await handler.execute("o1", PARAMS)
        await handler.execute("o1", PARAMS)

        assert delivery.types_submitted() == ["prepare"]
        assert handler.get_stats()["requeries"] == 1

    @pytest.mark.asyncio
    async def test_fill_uses_stored_params(self, state_machine, bus, submitter, standard, delivery):
        handler = _handler(state_machine, bus, submitter, standard)
        await state_machine.store_order(
            make_order("o1", status=OrderStatus.EXECUTING, execution_params=PARAMS)
        )

        await handler.submit_fill("o1")

        assert standard.fill_params == [PARAMS]
        assert delivery.submitted[0].gas_price == 7

    @pytest.mark.asyncio
    async def test_recorded_fill_is_requeried(self, state_machine, bus, submitter, standard, delivery):
        handler = _handler(state_machine, bus, submitter, standard)
        await state_machine.store_order(
            make_order("o1", status=OrderStatus.EXECUTING, execution_params=PARAMS)
        )
        await handler.submit_fill("o1")

        await handler.submit_fill("o1")

        assert delivery.types_submitted() == ["fill"]

    @pytest.mark.asyncio
    async def test_fill_not_generated_before_executing(self, state_machine, bus, submitter, standard):
        handler = _handler(state_machine, bus, submitter, standard)
        await state_machine.store_order(make_order("o1", execution_params=PARAMS))

        await handler.submit_fill("o1")

        assert standard.fill_params == []

    @pytest.mark.asyncio
    async def test_missing_params_fails_order(self, state_machine, bus, submitter, standard):
        handler = _handler(state_machine, bus, submitter, standard)
        await state_machine.store_order(make_order("o1", status=OrderStatus.EXECUTING))

        await handler.submit_fill("o1")
        await bus.drain()

        order = await state_machine.get_order("o1")
        assert order.status == OrderStatus.FAILED
        assert order.failure_reason == "fill: no execution parameters"
        assert bus.get_history(EventType.ORDER_FAILED)[0].data["reason"] == order.failure_reason

    @pytest.mark.asyncio
    async def test_fill_generation_error_fails_order(self, state_machine, bus, submitter, standard):
        standard.fill_error = RuntimeError("quote expired")
        handler = _handler(state_machine, bus, submitter, standard)
        await state_machine.store_order(make_order("o1", execution_params=PARAMS))

        await handler.execute("o1", PARAMS)

        order = await state_machine.get_order("o1")
        assert order.status == OrderStatus.FAILED
        assert order.failure_reason == "fill: quote expired"

    @pytest.mark.asyncio
    async def test_submit_rejection_fails_order(self, state_machine, bus, submitter, standard, delivery):
        delivery.submit_error = ValueError("insufficient funds for gas")
        handler = _handler(state_machine, bus, submitter, standard)
        await state_machine.store_order(make_order("o1", execution_params=PARAMS))

        await handler.execute("o1", PARAMS)

        order = await state_machine.get_order("o1")
        assert order.status == OrderStatus.FAILED
        assert order.failure_reason == "fill: insufficient funds for gas"

    @pytest.mark.asyncio
    async def test_event_entry_points(self, state_machine, bus, submitter, standard, delivery):
        handler = _handler(state_machine, bus, submitter, standard)
        bus.subscribe(EventType.ORDER_VALIDATED, handler.on_order_validated)
        await state_machine.store_order(make_order("o1", execution_params=PARAMS))

        await bus.emit(EventType.ORDER_VALIDATED, order_id="o1", params=PARAMS)

        async def fill_pending():
            return bool(bus.get_history(EventType.TRANSACTION_PENDING))

        assert await wait_for(fill_pending, bus)
        assert delivery.types_submitted() == ["fill"]
