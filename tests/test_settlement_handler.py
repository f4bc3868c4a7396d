"""
Tests for SettlementHandler.

Covers:
- Post-fill and pre-claim stages, with and without a settlement transaction
- Claim batching by size and by window
- Independent per-order outcomes inside a batch
"""

import asyncio

import pytest

from conftest import DEST, FakeSettlement, make_order

from solver_engine.core.event_bus import EventType
from solver_engine.core.interfaces import SettlementRegistry
from solver_engine.core.types import (
    FillProof,
    OrderStatus,
    TransactionReceipt,
    TransactionRef,
    TransactionType,
)
from solver_engine.handlers.settlement_handler import SettlementHandler

PROOF = FillProof(tx_hash="0xfill", filled_timestamp=1_700_000_000, block_number=9)


def _handler(state_machine, bus, standards, delivery, submitter, settlement=None, **kwargs):
    registry = SettlementRegistry({"direct": settlement or FakeSettlement()}, default="direct")
    return SettlementHandler(state_machine, bus, standards, registry, delivery, submitter, **kwargs)


async def _executed_order(state_machine, order_id="o1"):
    await state_machine.store_order(make_order(order_id, status=OrderStatus.EXECUTED))
    await state_machine.attach_transaction(order_id, TransactionType.FILL, TransactionRef("0xfill", DEST))


class TestPostFill:
    @pytest.mark.asyncio
    async def test_no_post_fill_tx_moves_to_post_filled(
        self, state_machine, bus, standards, delivery, submitter
    ):
        handler = _handler(state_machine, bus, standards, delivery, submitter)
        await _executed_order(state_machine)

        await handler.handle_post_fill_ready("o1", TransactionReceipt("0xfill", DEST, True))
        await bus.drain()

        assert (await state_machine.get_order("o1")).status == OrderStatus.POST_FILLED
        start = bus.get_history(EventType.MONITORING_START)[0]
        assert start.data["fill_tx_hash"] == "0xfill"

    @pytest.mark.asyncio
    async def test_post_fill_tx_submitted(self, state_machine, bus, standards, delivery, submitter):
        handler = _handler(
            state_machine, bus, standards, delivery, submitter, FakeSettlement(post_fill=True)
        )
        await _executed_order(state_machine)

        await handler.handle_post_fill_ready("o1", TransactionReceipt("0xfill", DEST, True))

        order = await state_machine.get_order("o1")
        assert order.status == OrderStatus.EXECUTED
        assert order.tx_hash(TransactionType.POST_FILL) is not None
        assert delivery.types_submitted() == ["post_fill"]

    @pytest.mark.asyncio
    async def test_fill_receipt_fetched_when_missing(
        self, state_machine, bus, standards, delivery, submitter
    ):
        handler = _handler(state_machine, bus, standards, delivery, submitter)
        await _executed_order(state_machine)
        delivery.receipts["0xfill"] = TransactionReceipt("0xfill", DEST, True)

        await handler.handle_post_fill_ready("o1")

        assert (await state_machine.get_order("o1")).status == OrderStatus.POST_FILLED

    @pytest.mark.asyncio
    async def test_unavailable_fill_receipt_fails(self, state_machine, bus, standards, delivery, submitter):
        handler = _handler(state_machine, bus, standards, delivery, submitter)
        await _executed_order(state_machine)

        await handler.handle_post_fill_ready("o1")

        order = await state_machine.get_order("o1")
        assert order.status == OrderStatus.FAILED
        assert order.failure_reason == "post_fill: fill receipt unavailable for 0xfill"


class TestPreClaim:
    @pytest.mark.asyncio
    async def test_no_pre_claim_tx_moves_to_pre_claimed(
        self, state_machine, bus, standards, delivery, submitter
    ):
        handler = _handler(state_machine, bus, standards, delivery, submitter)
        await state_machine.store_order(make_order("o1", status=OrderStatus.SETTLED, fill_proof=PROOF))

        await handler.handle_pre_claim_ready("o1")
        await bus.drain()

        assert (await state_machine.get_order("o1")).status == OrderStatus.PRE_CLAIMED
        assert [e.type for e in bus.get_history()] == [EventType.CLAIM_READY]

    @pytest.mark.asyncio
    async def test_pre_claim_tx_submitted(self, state_machine, bus, standards, delivery, submitter):
        handler = _handler(
            state_machine, bus, standards, delivery, submitter, FakeSettlement(pre_claim=True)
        )
        await state_machine.store_order(make_order("o1", status=OrderStatus.SETTLED, fill_proof=PROOF))

        await handler.handle_pre_claim_ready("o1")

        assert (await state_machine.get_order("o1")).status == OrderStatus.SETTLED
        assert delivery.types_submitted() == ["pre_claim"]

    @pytest.mark.asyncio
    async def test_missing_proof_fails(self, state_machine, bus, standards, delivery, submitter):
        handler = _handler(state_machine, bus, standards, delivery, submitter)
        await state_machine.store_order(make_order("o1", status=OrderStatus.SETTLED))

        await handler.handle_pre_claim_ready("o1")

        order = await state_machine.get_order("o1")
        assert order.failure_reason == "pre_claim: no fill proof attached"


class TestClaimBatching:
    @pytest.mark.asyncio
    async def test_flushes_at_batch_size(self, state_machine, bus, standards, delivery, submitter):
        handler = _handler(
            state_machine, bus, standards, delivery, submitter,
            claim_batch_size=2, claim_batch_window_sec=60,
        )
        for oid in ("o1", "o2"):
            await state_machine.store_order(make_order(oid, status=OrderStatus.PRE_CLAIMED, fill_proof=PROOF))

        await handler.enqueue_claim("o1")
        await handler.enqueue_claim("o1")
        assert handler.queued_claims == ["o1"]
        assert delivery.submitted == []

        await handler.enqueue_claim("o2")

        assert handler.queued_claims == []
        assert delivery.types_submitted() == ["claim", "claim"]
        assert handler.get_stats()["claim_batches"] == 1

    @pytest.mark.asyncio
    async def test_flushes_after_window(self, state_machine, bus, standards, delivery, submitter):
        handler = _handler(
            state_machine, bus, standards, delivery, submitter,
            claim_batch_size=10, claim_batch_window_sec=0.05,
        )
        await state_machine.store_order(make_order("o1", status=OrderStatus.PRE_CLAIMED, fill_proof=PROOF))

        await handler.enqueue_claim("o1")
        assert delivery.submitted == []
        await asyncio.sleep(0.15)

        assert delivery.types_submitted() == ["claim"]
        order = await state_machine.get_order("o1")
        assert order.tx_hash(TransactionType.CLAIM) is not None

    @pytest.mark.asyncio
    async def test_batch_members_fail_independently(
        self, state_machine, bus, standards, delivery, submitter
    ):
        handler = _handler(state_machine, bus, standards, delivery, submitter)
        await state_machine.store_order(make_order("good", status=OrderStatus.PRE_CLAIMED, fill_proof=PROOF))
        await state_machine.store_order(make_order("no-proof", status=OrderStatus.PRE_CLAIMED))

        outcome = await handler.process_claim_batch(["good", "no-proof", "missing"])

        assert outcome == {"good": True, "no-proof": False, "missing": False}
        assert (await state_machine.get_order("good")).status == OrderStatus.PRE_CLAIMED
        failed = await state_machine.get_order("no-proof")
        assert failed.failure_reason == "claim: no fill proof attached"

    @pytest.mark.asyncio
    async def test_recorded_claim_requeried(self, state_machine, bus, standards, delivery, submitter):
        handler = _handler(state_machine, bus, standards, delivery, submitter)
        await state_machine.store_order(make_order("o1", status=OrderStatus.PRE_CLAIMED, fill_proof=PROOF))
        await state_machine.attach_transaction("o1", TransactionType.CLAIM, TransactionRef("0xclaim", 1))
        delivery.receipts["0xclaim"] = TransactionReceipt("0xclaim", 1, True)

        outcome = await handler.process_claim_batch(["o1"])
        await bus.drain()

        assert outcome == {"o1": True}
        assert delivery.submitted == []
        assert bus.get_history(EventType.TRANSACTION_CONFIRMED)[0].data["tx_hash"] == "0xclaim"

    @pytest.mark.asyncio
    async def test_stop_drops_queue(self, state_machine, bus, standards, delivery, submitter):
        handler = _handler(
            state_machine, bus, standards, delivery, submitter,
            claim_batch_size=10, claim_batch_window_sec=60,
        )
        await state_machine.store_order(make_order("o1", status=OrderStatus.PRE_CLAIMED, fill_proof=PROOF))
        await handler.enqueue_claim("o1")

        await handler.stop()

        assert handler.queued_claims == []
        assert delivery.submitted == []
