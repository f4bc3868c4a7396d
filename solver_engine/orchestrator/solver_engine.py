"""
SolverEngine: wires the lifecycle components onto one event bus.

    INTENT_DISCOVERED      -> IntentHandler.on_intent_discovered
    ORDER_VALIDATED        -> OrderHandler.on_order_validated
    ORDER_EXECUTING        -> OrderHandler.on_order_executing
    TRANSACTION_CONFIRMED  -> TransactionHandler.on_transaction_confirmed
    TRANSACTION_FAILED     -> TransactionHandler.on_transaction_failed
    POST_FILL_READY        -> SettlementHandler.on_post_fill_ready
    MONITORING_START       -> SettlementMonitor.on_monitoring_start
    PRE_CLAIM_READY        -> SettlementHandler.on_pre_claim_ready
    CLAIM_READY            -> SettlementHandler.on_claim_ready
    ORDER_FAILED           -> SettlementMonitor.on_order_failed,
                              IntentHandler (drop pending re-evaluation)
    *                      -> EngineMetrics.record (if metrics enabled)

The engine owns the control flow of startup and shutdown, not the
business logic: start() runs recovery then processes events; stop()
cancels timers, waits and monitors without failing any order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from solver_engine.core.event_bus import Event, EventBus, EventType
from solver_engine.core.interfaces import (
    DeliveryService,
    OrderIdCallback,
    PricingService,
    SettlementRegistry,
    StandardRegistry,
    StorageBackend,
)
from solver_engine.core.types import Intent
from solver_engine.execution.context_builder import ContextBuilder
from solver_engine.execution.profitability import ProfitabilityConfig, ProfitabilityEvaluator
from solver_engine.execution.transaction_submitter import (
    TransactionSubmitter,
    TransactionSubmitterConfig,
)
from solver_engine.handlers.intent_handler import IntentHandler
from solver_engine.handlers.order_handler import OrderHandler
from solver_engine.handlers.settlement_handler import SettlementHandler
from solver_engine.handlers.transaction_handler import TransactionHandler
from solver_engine.monitoring.metrics_rich import EngineMetrics
from solver_engine.monitoring.settlement_monitor import SettlementMonitor
from solver_engine.recovery.recovery_service import RecoveryResult, RecoveryService
from solver_engine.state.order_state_machine import OrderStateMachine
from solver_engine.state.store import create_store
from solver_engine.strategy.strategy import ExecutionStrategy
from solver_engine.strategy.strategy_factory import StrategyFactory

log = logging.getLogger("solver")


@dataclass
class EngineConfig:
    """Configuration for SolverEngine."""
    solver_address: str

    # Evaluation
    min_profitability_pct: float = 1.0
    evaluation_retry_seconds: float = 60.0
    prepare_gas_units: int = 150_000
    fill_gas_units: int = 300_000
    post_fill_gas_units: int = 0
    pre_claim_gas_units: int = 0
    claim_gas_units: int = 200_000

    # Delivery / settlement
    confirmations: int = 1
    monitoring_timeout_minutes: float = 60.0
    claim_batch_size: int = 10
    claim_batch_window_sec: float = 5.0

    # Event bus
    max_concurrent_flows: int = 32

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(
        cls,
        settings,
        solver_address: str,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> "EngineConfig":
        return cls(
            solver_address=solver_address,
            min_profitability_pct=settings.min_profitability_pct,
            evaluation_retry_seconds=settings.defer_seconds,
            prepare_gas_units=settings.prepare_gas_units,
            fill_gas_units=settings.fill_gas_units,
            post_fill_gas_units=settings.post_fill_gas_units,
            pre_claim_gas_units=settings.pre_claim_gas_units,
            claim_gas_units=settings.claim_gas_units,
            confirmations=settings.confirmations,
            monitoring_timeout_minutes=settings.monitoring_timeout_minutes,
            claim_batch_size=settings.claim_batch_size,
            claim_batch_window_sec=settings.claim_batch_window_sec,
            max_concurrent_flows=settings.max_concurrent_flows,
            log_event_callback=log_event_callback,
        )


class SolverEngine:
    """
    Usage:
        engine = SolverEngine(config, standards, settlements, delivery, pricing, storage, strategy)
        await engine.start()
        await engine.submit_intent(intent)
        ...
        await engine.stop()
    """

    SOURCE = "engine"

    def __init__(
        self,
        config: EngineConfig,
        standards: StandardRegistry,
        settlements: SettlementRegistry,
        delivery: DeliveryService,
        pricing: PricingService,
        storage: StorageBackend,
        strategy: ExecutionStrategy,
        metrics: Optional[EngineMetrics] = None,
    ) -> None:
        self.config = config
        self.metrics = metrics
        self._log_event = config.log_event_callback or self._default_log
        log_cb = config.log_event_callback

        # Unbounded queue: publish() never drops a lifecycle event
        self.bus = EventBus(
            max_concurrency=config.max_concurrent_flows,
            log_event=log_cb,
        )
        self.state_machine = OrderStateMachine(storage, log_event=log_cb)
        self.submitter = TransactionSubmitter(
            delivery,
            self.state_machine,
            self.bus,
            TransactionSubmitterConfig(
                confirmations=config.confirmations,
                log_event_callback=log_cb,
            ),
        )
        self.context_builder = ContextBuilder(delivery, log_event=log_cb)
        self.evaluator = ProfitabilityEvaluator(
            delivery,
            pricing,
            ProfitabilityConfig(
                min_profitability_pct=config.min_profitability_pct,
                prepare_gas_units=config.prepare_gas_units,
                fill_gas_units=config.fill_gas_units,
                claim_gas_units=config.claim_gas_units,
                post_fill_gas_units=config.post_fill_gas_units,
                pre_claim_gas_units=config.pre_claim_gas_units,
                log_event_callback=log_cb,
            ),
        )

        self.intent_handler = IntentHandler(
            self.state_machine,
            self.bus,
            storage,
            standards,
            self.context_builder,
            self.evaluator,
            strategy,
            delivery,
            config.solver_address,
            evaluation_retry_seconds=config.evaluation_retry_seconds,
            log_event=log_cb,
        )
        self.order_handler = OrderHandler(
            self.state_machine, self.bus, standards, self.submitter, log_event=log_cb
        )
        self.transaction_handler = TransactionHandler(self.state_machine, self.bus, log_event=log_cb)
        self.settlement_handler = SettlementHandler(
            self.state_machine,
            self.bus,
            standards,
            settlements,
            delivery,
            self.submitter,
            claim_batch_size=config.claim_batch_size,
            claim_batch_window_sec=config.claim_batch_window_sec,
            log_event=log_cb,
        )
        self.monitor = SettlementMonitor(
            self.state_machine,
            self.bus,
            settlements,
            timeout_minutes=config.monitoring_timeout_minutes,
            log_event=log_cb,
        )
        self.recovery = RecoveryService(
            self.state_machine,
            self.bus,
            self.submitter,
            self.intent_handler,
            self.order_handler,
            self.settlement_handler,
            self.monitor,
            log_event=log_cb,
        )

        self._bus_task: Optional[asyncio.Task] = None
        self._running = False
        self.last_recovery: Optional[RecoveryResult] = None
        self._wire()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def _wire(self) -> None:
        bus = self.bus
        if self.metrics is not None:
            bus.subscribe_all(self.metrics.record, priority=100, name="metrics")
            self.metrics.active_monitors.set_function(lambda: len(self.monitor.active))

        bus.subscribe(EventType.INTENT_DISCOVERED, self.intent_handler.on_intent_discovered,
                      name="intent_handler", concurrent=True)
        bus.subscribe(EventType.ORDER_VALIDATED, self.order_handler.on_order_validated,
                      name="order_handler.validated", concurrent=True)
        bus.subscribe(EventType.ORDER_EXECUTING, self.order_handler.on_order_executing,
                      name="order_handler.executing", concurrent=True)
        bus.subscribe(EventType.TRANSACTION_CONFIRMED, self.transaction_handler.on_transaction_confirmed,
                      name="transaction_handler.confirmed", concurrent=True)
        bus.subscribe(EventType.TRANSACTION_FAILED, self.transaction_handler.on_transaction_failed,
                      name="transaction_handler.failed", concurrent=True)
        bus.subscribe(EventType.POST_FILL_READY, self.settlement_handler.on_post_fill_ready,
                      name="settlement_handler.post_fill", concurrent=True)
        bus.subscribe(EventType.MONITORING_START, self.monitor.on_monitoring_start,
                      name="settlement_monitor.start")
        bus.subscribe(EventType.PRE_CLAIM_READY, self.settlement_handler.on_pre_claim_ready,
                      name="settlement_handler.pre_claim", concurrent=True)
        bus.subscribe(EventType.CLAIM_READY, self.settlement_handler.on_claim_ready,
                      name="settlement_handler.claim", concurrent=True)
        bus.subscribe(EventType.ORDER_FAILED, self.monitor.on_order_failed,
                      name="settlement_monitor.stop")
        bus.subscribe(EventType.ORDER_FAILED, self._on_order_failed, name="engine.order_failed")

    def _on_order_failed(self, event: Event) -> None:
        self.intent_handler.cancel_deferred(event.data["order_id"])

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, run_recovery: bool = True, process_events: bool = True) -> Optional[RecoveryResult]:
        """
        Recover persisted orders, then start processing events.

        Args:
            run_recovery: Reconcile non-terminal orders first
            process_events: Run the bus loop as a background task (tests
                may pass False and drive the bus with drain())
        """
        if self._running:
            return self.last_recovery
        self._running = True

        if run_recovery:
            self.last_recovery = await self.recovery.run()
        if process_events:
            self._bus_task = asyncio.create_task(self.bus.start())

        await self.bus.emit(EventType.ENGINE_STARTED, source=self.SOURCE,
                            solver_address=self.config.solver_address)
        self._log_event("engine_started", solver_address=self.config.solver_address)
        return self.last_recovery

    async def stop(self) -> None:
        """Stop without failing any order; everything left resumes via recovery."""
        if not self._running:
            return
        self._running = False

        await self.intent_handler.stop()
        await self.settlement_handler.stop()
        cancelled = await self.monitor.stop_all()
        await self.submitter.stop()
        await self.bus.cancel_inflight()

        await self.bus.emit(EventType.ENGINE_STOPPED, source=self.SOURCE)
        self.bus.stop()
        if self._bus_task is not None:
            await asyncio.gather(self._bus_task, return_exceptions=True)
            self._bus_task = None

        self._log_event("engine_stopped", monitors_cancelled=cancelled, **self.state_machine.get_stats())

    async def submit_intent(
        self,
        intent: Intent,
        order_id_callback: Optional[OrderIdCallback] = None,
    ) -> bool:
        """Entry point for discovery sources."""
        return await self.bus.emit(
            EventType.INTENT_DISCOVERED,
            source=intent.source or "discovery",
            correlation_id=intent.id,
            intent=intent,
            intent_id=intent.id,
            order_id_callback=order_id_callback,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "event_bus": self.bus.get_stats(),
            "state_machine": self.state_machine.get_stats(),
            "submitter": self.submitter.get_stats(),
            "intent_handler": self.intent_handler.get_stats(),
            "order_handler": self.order_handler.get_stats(),
            "transaction_handler": self.transaction_handler.get_stats(),
            "settlement_handler": self.settlement_handler.get_stats(),
            "monitor": self.monitor.get_stats(),
        }


def build_engine(
    settings,
    standards: StandardRegistry,
    settlements: SettlementRegistry,
    delivery: DeliveryService,
    pricing: PricingService,
    storage: Optional[StorageBackend] = None,
    metrics: Optional[EngineMetrics] = None,
    log_event_callback: Optional[Callable[..., None]] = None,
) -> SolverEngine:
    """Build a SolverEngine from Settings and the collaborator implementations."""
    config = EngineConfig.from_settings(
        settings,
        solver_address=settings.resolve_solver_address(),
        log_event_callback=log_event_callback,
    )
    strategy = StrategyFactory.create(settings.strategy, settings)
    if storage is None:
        storage = create_store(settings.storage_backend, settings.state_dir)
    return SolverEngine(
        config,
        standards,
        settlements,
        delivery,
        pricing,
        storage,
        strategy,
        metrics=metrics,
    )
