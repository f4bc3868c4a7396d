"""
Process runner: logging, metrics, engine, discovery and signal handling.

Collaborator implementations (standards, settlements, delivery, pricing)
are supplied by the deployment; this module only wires and supervises.

Usage:
    asyncio.run(run_solver(Settings.load(), standards, settlements, delivery, pricing))
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Optional

from solver_engine.config.config import Settings
from solver_engine.core.interfaces import (
    DeliveryService,
    PricingService,
    SettlementRegistry,
    StandardRegistry,
    StorageBackend,
)
from solver_engine.discovery.order_cache import OrderCacheDiscovery
from solver_engine.infra.logging_cfg import build_logger, make_log_event
from solver_engine.monitoring.metrics_rich import EngineMetrics, start_metrics_server
from solver_engine.orchestrator.solver_engine import SolverEngine, build_engine


class EngineRunner:
    """Owns one engine and its discovery sources for the life of the process."""

    def __init__(self, engine: SolverEngine, discovery: Optional[OrderCacheDiscovery] = None) -> None:
        self.engine = engine
        self.discovery = discovery
        self.error: Exception | None = None

    async def start(self) -> None:
        try:
            await self.engine.start()
            if self.discovery is not None:
                await self.discovery.start()
        except Exception as exc:
            self.error = exc
            logging.getLogger("solver").exception(
                json.dumps({"event": "engine_start_error", "err": str(exc)})
            )
            await self.stop()
            raise

    async def stop(self) -> None:
        if self.discovery is not None:
            await self.discovery.stop()
        await self.engine.stop()


async def run_solver(
    settings: Settings,
    standards: StandardRegistry,
    settlements: SettlementRegistry,
    delivery: DeliveryService,
    pricing: PricingService,
    storage: Optional[StorageBackend] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run until SIGINT/SIGTERM (or stop_event), then shut down gracefully."""
    log = build_logger(
        "solver",
        level=settings.log_level,
        file_path=settings.log_file,
        json_console=settings.log_json,
    )
    log_cb = make_log_event(log)

    metrics = EngineMetrics()
    if settings.metrics_port:
        start_metrics_server(settings.metrics_port, metrics)

    engine = build_engine(
        settings,
        standards,
        settlements,
        delivery,
        pricing,
        storage=storage,
        metrics=metrics,
        log_event_callback=log_cb,
    )

    discovery = None
    if settings.cache_url:
        discovery = OrderCacheDiscovery(
            settings.cache_url,
            engine.submit_intent,
            poll_interval_sec=settings.cache_poll_interval_sec,
            whitelist=settings.cache_whitelist or None,
            standard=settings.cache_standard,
            lock_type=settings.cache_lock_type,
            id_prefix=settings.cache_id_prefix,
            timeout=settings.http_timeout,
            log_event=log_cb,
        )

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler; rely on KeyboardInterrupt there
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    runner = EngineRunner(engine, discovery)
    await runner.start()
    log.info(json.dumps({"event": "startup", "solver_address": engine.config.solver_address}))
    try:
        await stop_event.wait()
        log.info("Shutdown signal received, cleaning up...")
    finally:
        await runner.stop()
        log.info("Shutdown complete")
