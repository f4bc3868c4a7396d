"""
Tests for TransactionHandler: stage outcomes mapped onto order transitions.
"""

import pytest

from conftest import DEST, ORIGIN, make_order

from solver_engine.core.event_bus import Event, EventType
from solver_engine.core.types import (
    OrderStatus,
    TransactionReceipt,
    TransactionRef,
    TransactionType,
)
from solver_engine.handlers.transaction_handler import TransactionHandler


async def _order_with_tx(state_machine, status, tx_type, tx_hash="0xtx", chain_id=DEST):
    await state_machine.store_order(make_order("o1", status=status))
    await state_machine.attach_transaction("o1", tx_type, TransactionRef(tx_hash, chain_id))


def _confirmed(tx_hash="0xtx", chain_id=DEST):
    receipt = TransactionReceipt(tx_hash, chain_id, success=True, block_number=5)
    return Event(
        type=EventType.TRANSACTION_CONFIRMED,
        data={"tx_hash": tx_hash, "chain_id": chain_id, "receipt": receipt},
    )


def _failed(tx_hash="0xtx", error="execution reverted"):
    return Event(type=EventType.TRANSACTION_FAILED, data={"tx_hash": tx_hash, "error": error})


@pytest.fixture
def handler(state_machine, bus):
    return TransactionHandler(state_machine, bus)


class TestSuccessTransitions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "tx_type, before, after, next_event",
        [
            (TransactionType.PREPARE, OrderStatus.PENDING, OrderStatus.EXECUTING, EventType.ORDER_EXECUTING),
            (TransactionType.FILL, OrderStatus.EXECUTING, OrderStatus.EXECUTED, EventType.POST_FILL_READY),
            (TransactionType.POST_FILL, OrderStatus.EXECUTED, OrderStatus.POST_FILLED, EventType.MONITORING_START),
            (TransactionType.PRE_CLAIM, OrderStatus.SETTLED, OrderStatus.PRE_CLAIMED, EventType.CLAIM_READY),
            (TransactionType.CLAIM, OrderStatus.PRE_CLAIMED, OrderStatus.FINALIZED, EventType.ORDER_COMPLETED),
        ],
    )
    async def test_stage_confirmed(self, handler, state_machine, bus, tx_type, before, after, next_event):
        await _order_with_tx(state_machine, before, tx_type)

        await handler.on_transaction_confirmed(_confirmed())
        await bus.drain()

        assert (await state_machine.get_order("o1")).status == after
        assert [e.type for e in bus.get_history()] == [next_event]
        assert bus.get_history()[0].correlation_id == "o1"

    @pytest.mark.asyncio
    async def test_fill_confirmation_carries_receipt(self, handler, state_machine, bus):
        await _order_with_tx(state_machine, OrderStatus.EXECUTING, TransactionType.FILL, "0xfill")

        await handler.on_transaction_confirmed(_confirmed("0xfill"))
        await bus.drain()

        ready = bus.get_history(EventType.POST_FILL_READY)[0]
        assert ready.data["fill_tx_hash"] == "0xfill"
        assert ready.data["receipt"].block_number == 5

    @pytest.mark.asyncio
    async def test_post_fill_confirmation_points_monitor_at_fill(self, handler, state_machine, bus):
        await state_machine.store_order(make_order("o1", status=OrderStatus.EXECUTED))
        await state_machine.attach_transaction("o1", TransactionType.FILL, TransactionRef("0xfill", DEST))
        await state_machine.attach_transaction("o1", TransactionType.POST_FILL, TransactionRef("0xpost", DEST))

        await handler.on_transaction_confirmed(_confirmed("0xpost"))
        await bus.drain()

        assert bus.get_history(EventType.MONITORING_START)[0].data["fill_tx_hash"] == "0xfill"

    @pytest.mark.asyncio
    async def test_duplicate_confirmation_is_stale(self, handler, state_machine, bus):
        await _order_with_tx(state_machine, OrderStatus.EXECUTING, TransactionType.FILL)

        await handler.on_transaction_confirmed(_confirmed())
        await handler.on_transaction_confirmed(_confirmed())
        await bus.drain()

        assert len(bus.get_history(EventType.POST_FILL_READY)) == 1
        assert handler.get_stats()["confirmed"] == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_claim_revert_fails_order(self, handler, state_machine, bus):
        await _order_with_tx(state_machine, OrderStatus.PRE_CLAIMED, TransactionType.CLAIM, chain_id=ORIGIN)

        await handler.on_transaction_failed(_failed())
        await bus.drain()

        order = await state_machine.get_order("o1")
        assert order.status == OrderStatus.FAILED
        assert order.failure_reason == "claim: execution reverted"
        failed = bus.get_history(EventType.ORDER_FAILED)[0]
        assert failed.data["reason"] == "claim: execution reverted"

    @pytest.mark.asyncio
    async def test_failure_without_error_text(self, handler, state_machine, bus):
        await _order_with_tx(state_machine, OrderStatus.EXECUTING, TransactionType.FILL)

        await handler.on_transaction_failed(_failed(error=None))

        assert (await state_machine.get_order("o1")).failure_reason == "fill: transaction failed"

    @pytest.mark.asyncio
    async def test_failure_after_order_moved_on(self, handler, state_machine, bus):
        await _order_with_tx(state_machine, OrderStatus.EXECUTED, TransactionType.FILL)

        await handler.on_transaction_failed(_failed())
        await bus.drain()

        assert (await state_machine.get_order("o1")).status == OrderStatus.EXECUTED
        assert bus.get_history() == []

    @pytest.mark.asyncio
    async def test_unknown_hash_ignored(self, handler, bus):
        await handler.on_transaction_confirmed(_confirmed("0xnobody"))
        await bus.drain()

        assert handler.get_stats()["unknown_hash"] == 1
        assert bus.get_history() == []
