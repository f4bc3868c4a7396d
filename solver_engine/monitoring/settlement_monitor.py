"""
SettlementMonitor: one cancellable polling task per order awaiting settlement.

Loop (order at POST_FILLED):
    1. Attestation lookup until a fill proof exists (skipped if one is attached)
    2. Persist the proof, emit PROOF_READY
    3. Claimability check until true
    4. POST_FILLED -> SETTLED, emit PRE_CLAIM_READY

Budget:
    ceil(T / I) polls in total across both phases, spaced I apart and
    starting one interval after the monitor starts, so the last poll runs
    at or after the deadline T (T is monitoring_timeout_minutes, I the
    settlement's poll interval). The poll that first obtains a proof also
    checks claimability. The order fails with "timed_out" and
    MONITOR_TIMEOUT is emitted only once T has elapsed.

A collaborator error during a poll is logged and still counts as a poll.
Cancelling a monitor (stop/stop_all) leaves the order at POST_FILLED so
recovery can restart it.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Callable, Dict, List, Optional

from solver_engine.core.event_bus import Event, EventBus, EventType
from solver_engine.core.interfaces import SettlementRegistry
from solver_engine.core.types import TIMED_OUT, FillProof, OrderStatus, TransactionType
from solver_engine.handlers.base import BaseHandler
from solver_engine.state.order_state_machine import OrderStateMachine


def poll_budget(timeout_seconds: float, interval_seconds: float) -> int:
    """ceil(T / I), never less than one poll."""
    if interval_seconds <= 0:
        return max(1, math.ceil(timeout_seconds))
    return max(1, math.ceil(timeout_seconds / interval_seconds))


class SettlementMonitor(BaseHandler):
    """
    Per-order settlement polling.

    Usage:
        monitor = SettlementMonitor(state_machine, bus, settlements, timeout_minutes=60)
        monitor.start(order_id, fill_tx_hash)
        ...
        await monitor.stop_all()   # shutdown; orders stay resumable
    """

    SOURCE = "settlement_monitor"

    def __init__(
        self,
        state_machine: OrderStateMachine,
        event_bus: EventBus,
        settlements: SettlementRegistry,
        timeout_minutes: float = 60.0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(state_machine, event_bus, log_event)
        self.settlements = settlements
        self.timeout_seconds = timeout_minutes * 60.0
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stats = {
            "started": 0,
            "settled": 0,
            "timed_out": 0,
            "cancelled": 0,
            "poll_errors": 0,
            "polls": 0,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def on_monitoring_start(self, event: Event) -> None:
        self.start(event.data["order_id"], event.data.get("fill_tx_hash"))

    async def on_order_failed(self, event: Event) -> None:
        # Our own timeout failure; the task is finishing by itself
        if event.source == self.SOURCE:
            return
        await self.stop(event.data["order_id"])

    def start(self, order_id: str, fill_tx_hash: Optional[str] = None) -> bool:
        """Start monitoring an order. Returns False if already monitored."""
        existing = self._tasks.get(order_id)
        if existing is not None and not existing.done():
            self._log_event("monitor_already_running", order_id=order_id)
            return False

        task = asyncio.create_task(self._run(order_id, fill_tx_hash))
        self._tasks[order_id] = task

        def _done(t: asyncio.Task, oid: str = order_id) -> None:
            if self._tasks.get(oid) is t:
                del self._tasks[oid]

        task.add_done_callback(_done)
        self._stats["started"] += 1
        self._log_event("monitor_started", order_id=order_id, fill_tx_hash=fill_tx_hash)
        return True

    async def stop(self, order_id: str) -> bool:
        """Cancel one monitor without touching the order's status."""
        task = self._tasks.pop(order_id, None)
        if task is None or task is asyncio.current_task():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def stop_all(self) -> int:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    @property
    def active(self) -> List[str]:
        return [oid for oid, t in self._tasks.items() if not t.done()]

    def is_monitoring(self, order_id: str) -> bool:
        task = self._tasks.get(order_id)
        return task is not None and not task.done()

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def _run(self, order_id: str, fill_tx_hash: Optional[str]) -> None:
        try:
            await self._monitor(order_id, fill_tx_hash)
        except asyncio.CancelledError:
            self._stats["cancelled"] += 1
            self._log_event("monitor_cancelled", order_id=order_id)
            raise

    async def _monitor(self, order_id: str, fill_tx_hash: Optional[str]) -> None:
        order = await self.state_machine.get_order(order_id)
        if order.status != OrderStatus.POST_FILLED:
            self._log_event("monitor_not_post_filled", order_id=order_id, status=order.status.name)
            return

        settlement = self.settlements.get(order.settlement)
        if settlement is None:
            await self.fail_order(
                order_id,
                f"monitor: no settlement registered for {order.settlement!r}",
                OrderStatus.POST_FILLED,
            )
            return

        fill_tx_hash = fill_tx_hash or order.tx_hash(TransactionType.FILL)
        interval = float(settlement.poll_interval_seconds())
        if interval <= 0:
            interval = 1.0
        budget = poll_budget(self.timeout_seconds, interval)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds

        proof: Optional[FillProof] = order.fill_proof
        polls = 0

        # Polls land at I, 2I, ..., budget * I; the last one is at or past T
        while polls < budget:
            await asyncio.sleep(interval)
            polls += 1
            self._stats["polls"] += 1
            try:
                if proof is None:
                    found = await settlement.get_attestation(order, fill_tx_hash)
                    if found is None:
                        continue
                    order = await self.state_machine.attach_proof(order_id, found)
                    proof = found
                    await self.event_bus.emit(
                        EventType.PROOF_READY,
                        source=self.SOURCE,
                        order_id=order_id,
                        proof_tx_hash=proof.tx_hash,
                    )
                if await settlement.can_claim(order, proof):
                    await self._settled(order_id, polls)
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["poll_errors"] += 1
                self._log_event(
                    "monitor_poll_error",
                    order_id=order_id,
                    poll=polls,
                    phase="attestation" if proof is None else "claimability",
                    error=str(e),
                )

        # Timer slack can wake the last poll a hair early
        remaining = deadline - loop.time()
        if remaining > 0:
            await asyncio.sleep(remaining)
        await self._timed_out(order_id, polls, proof is not None)

    async def _settled(self, order_id: str, polls: int) -> None:
        order = await self.advance(
            order_id, OrderStatus.POST_FILLED, OrderStatus.SETTLED, "claimable"
        )
        if order is None:
            return
        self._stats["settled"] += 1
        self._log_event("monitor_settled", order_id=order_id, polls=polls)
        await self.event_bus.emit(
            EventType.PRE_CLAIM_READY,
            source=self.SOURCE,
            order_id=order_id,
        )

    async def _timed_out(self, order_id: str, polls: int, has_proof: bool) -> None:
        self._stats["timed_out"] += 1
        self._log_event(
            "monitor_timeout",
            order_id=order_id,
            polls=polls,
            has_proof=has_proof,
            timeout_sec=self.timeout_seconds,
        )
        if await self.fail_order(order_id, TIMED_OUT, OrderStatus.POST_FILLED):
            await self.event_bus.emit(
                EventType.MONITOR_TIMEOUT,
                source=self.SOURCE,
                order_id=order_id,
                polls=polls,
                has_proof=has_proof,
            )

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "active": len(self.active)}
