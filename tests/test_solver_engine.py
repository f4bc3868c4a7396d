"""
End-to-end lifecycle tests through the wired SolverEngine.

Each test submits an intent and drives the bus until the order reaches a
terminal (or expected) status, then checks the submitted transactions and
the event trail.
"""

import pytest

from conftest import SOLVER, make_intent, wait_for, wait_for_status

from solver_engine.core.event_bus import EventType
from solver_engine.core.types import TIMED_OUT, OrderStatus, TransactionType


def _trail(engine, order_id):
    return [e.type for e in engine.bus.get_history(limit=1000) if e.correlation_id == order_id]


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_intent_to_finalized(self, engine_factory, delivery):
        engine = engine_factory()
        await engine.start(process_events=False)

        await engine.submit_intent(make_intent())

        assert await wait_for_status(engine, "order-1", OrderStatus.FINALIZED)
        order = await engine.state_machine.get_order("order-1")
        assert [t.to_status for t in order.history] == [
            OrderStatus.EXECUTING,
            OrderStatus.EXECUTED,
            OrderStatus.POST_FILLED,
            OrderStatus.SETTLED,
            OrderStatus.PRE_CLAIMED,
            OrderStatus.FINALIZED,
        ]
        assert order.fill_proof is not None
        assert set(order.transactions) == {TransactionType.FILL, TransactionType.CLAIM}
        assert delivery.types_submitted() == ["fill", "claim"]

        trail = _trail(engine, "order-1")
        assert trail.index(EventType.ORDER_VALIDATED) < trail.index(EventType.POST_FILL_READY)
        assert trail.index(EventType.PROOF_READY) < trail.index(EventType.PRE_CLAIM_READY)
        assert trail[-1] == EventType.ORDER_COMPLETED
        assert engine.state_machine.get_stats()["total_finalized"] == 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_prepare_required(self, engine_factory, standard, delivery):
        standard.needs_prepare = True
        engine = engine_factory()
        await engine.start(process_events=False)

        await engine.submit_intent(make_intent())

        assert await wait_for_status(engine, "order-1", OrderStatus.FINALIZED)
        assert delivery.types_submitted() == ["prepare", "fill", "claim"]
        assert EventType.ORDER_EXECUTING in _trail(engine, "order-1")
        await engine.stop()

    @pytest.mark.asyncio
    async def test_settlement_transactions(self, engine_factory, settlement, delivery):
        settlement.post_fill = True
        settlement.pre_claim = True
        engine = engine_factory()
        await engine.start(process_events=False)

        await engine.submit_intent(make_intent())

        assert await wait_for_status(engine, "order-1", OrderStatus.FINALIZED)
        assert delivery.types_submitted() == ["fill", "post_fill", "pre_claim", "claim"]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_duplicate_discovery_one_order(self, engine_factory, standard, delivery):
        engine = engine_factory()
        await engine.start(process_events=False)

        for _ in range(3):
            await engine.submit_intent(make_intent())

        assert await wait_for_status(engine, "order-1", OrderStatus.FINALIZED)
        assert standard.created == ["order-1"]
        assert delivery.types_submitted() == ["fill", "claim"]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_independent_orders(self, engine_factory):
        engine = engine_factory()
        await engine.start(process_events=False)

        for n in range(5):
            await engine.submit_intent(make_intent(f"intent-{n}", f"order-{n}"))

        for n in range(5):
            assert await wait_for_status(engine, f"order-{n}", OrderStatus.FINALIZED)
        await engine.stop()


class TestFailurePaths:
    @pytest.mark.asyncio
    async def test_fill_revert_fails_order(self, engine_factory, delivery):
        delivery.revert_types.add("fill")
        engine = engine_factory()
        await engine.start(process_events=False)

        await engine.submit_intent(make_intent())

        assert await wait_for_status(engine, "order-1", OrderStatus.FAILED)
        order = await engine.state_machine.get_order("order-1")
        assert order.failure_reason == "fill: execution reverted"
        assert delivery.types_submitted() == ["fill"]
        assert _trail(engine, "order-1")[-1] == EventType.ORDER_FAILED
        await engine.stop()

    @pytest.mark.asyncio
    async def test_claimability_timeout(self, engine_factory, settlement):
        settlement.never_claimable = True
        settlement.interval = 0.05
        engine = engine_factory(monitoring_timeout_minutes=0.2 / 60)
        await engine.start(process_events=False)

        await engine.submit_intent(make_intent())

        assert await wait_for_status(engine, "order-1", OrderStatus.FAILED)
        assert (await engine.state_machine.get_order("order-1")).failure_reason == TIMED_OUT
        assert EventType.MONITOR_TIMEOUT in _trail(engine, "order-1")
        await engine.stop()

    @pytest.mark.asyncio
    async def test_unprofitable_order_stays_pending(self, engine_factory, delivery):
        engine = engine_factory(min_profitability_pct=90.0)
        await engine.start(process_events=False)

        await engine.submit_intent(make_intent())

        async def rejected():
            return bool(engine.bus.get_history(EventType.ORDER_REJECTED))

        assert await wait_for(rejected, engine.bus)
        assert (await engine.state_machine.get_order("order-1")).status == OrderStatus.PENDING
        assert delivery.submitted == []
        await engine.stop()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_then_resume(self, engine_factory, delivery):
        delivery.hold_confirmations = True
        engine = engine_factory()
        await engine.start(process_events=False)
        await engine.submit_intent(make_intent())

        async def fill_recorded():
            if not await engine.state_machine.exists("order-1"):
                return False
            order = await engine.state_machine.get_order("order-1")
            return order.tx_hash(TransactionType.FILL) is not None

        assert await wait_for(fill_recorded, engine.bus)
        await engine.stop()

        order = await engine.state_machine.get_order("order-1")
        assert order.status == OrderStatus.EXECUTING

        delivery.hold_confirmations = False
        resumed = engine_factory()
        result = await resumed.start(process_events=False)

        assert result.requeried == 1
        assert await wait_for_status(resumed, "order-1", OrderStatus.FINALIZED)
        assert delivery.types_submitted() == ["fill", "claim"]
        await resumed.stop()

    @pytest.mark.asyncio
    async def test_background_bus_loop(self, engine_factory):
        engine = engine_factory()
        await engine.start()
        assert engine.running

        await engine.submit_intent(make_intent())

        async def finalized():
            if not await engine.state_machine.exists("order-1"):
                return False
            return (await engine.state_machine.get_order("order-1")).status == OrderStatus.FINALIZED

        assert await wait_for(finalized)
        await engine.stop()
        assert not engine.running
        assert engine.get_stats()["state_machine"]["total_finalized"] == 1

    @pytest.mark.asyncio
    async def test_started_event_names_solver(self, engine_factory):
        engine = engine_factory()
        await engine.start(process_events=False)
        await engine.bus.drain()

        started = engine.bus.get_history(EventType.ENGINE_STARTED)[0]
        assert started.data["solver_address"] == SOLVER
        await engine.stop()


class TestEventDelivery:
    @pytest.mark.asyncio
    async def test_burst_before_bus_loop_is_kept(self, engine_factory):
        engine = engine_factory()

        for i in range(500):
            assert await engine.bus.emit(EventType.TRANSACTION_CONFIRMED, source="test", order_id=f"o{i}")

        stats = engine.bus.get_stats()
        assert stats["events_dropped"] == 0
        assert stats["queue_size"] == 500
