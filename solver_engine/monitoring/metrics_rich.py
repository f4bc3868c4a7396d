"""
Prometheus metrics for the solver engine.

Organized into: intake, evaluation, delivery, settlement, lifecycle.
EngineMetrics.record() is registered as a global event-bus subscriber, so
components never touch metrics directly.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, start_http_server
from typing import Optional

from solver_engine.core.event_bus import Event, EventType


class EngineMetrics:
    """Engine metrics, fed from lifecycle events."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Intake ===
        self.intents_discovered = Counter(
            'solver_intents_discovered_total',
            'Intents handed to the engine',
            labelnames=['source'],
            registry=reg
        )
        self.intents_rejected = Counter(
            'solver_intents_rejected_total',
            'Intents that failed validation (no order created)',
            registry=reg
        )

        # === Evaluation ===
        self.orders_evaluated = Counter(
            'solver_orders_evaluated_total',
            'Evaluation outcomes',
            labelnames=['outcome'],
            registry=reg
        )
        self.order_margin_pct = Histogram(
            'solver_order_margin_pct',
            'Profit margin of evaluated orders (%)',
            buckets=[-10, 0, 0.5, 1, 2, 5, 10, 25, 50, 100],
            registry=reg
        )

        # === Delivery ===
        self.transactions_submitted = Counter(
            'solver_transactions_submitted_total',
            'Stage transactions submitted',
            labelnames=['tx_type'],
            registry=reg
        )
        self.transactions_finished = Counter(
            'solver_transactions_finished_total',
            'Stage transactions with a final outcome',
            labelnames=['tx_type', 'outcome'],
            registry=reg
        )

        # === Settlement ===
        self.proofs_ready = Counter(
            'solver_proofs_ready_total',
            'Fill proofs obtained',
            registry=reg
        )
        self.monitor_timeouts = Counter(
            'solver_monitor_timeouts_total',
            'Settlement monitors that exhausted their budget',
            registry=reg
        )

        # === Lifecycle ===
        self.orders_completed = Counter(
            'solver_orders_completed_total',
            'Orders finalized (claim confirmed)',
            registry=reg
        )
        self.orders_failed = Counter(
            'solver_orders_failed_total',
            'Orders moved to FAILED',
            labelnames=['stage'],
            registry=reg
        )
        self.active_monitors = Gauge(
            'solver_active_monitors',
            'Settlement monitors currently polling',
            registry=reg
        )
        self.recovered_orders = Counter(
            'solver_recovered_orders_total',
            'Orders reconciled by recovery on startup',
            registry=reg
        )
        self.engine_started = Counter(
            'solver_engine_started_total',
            'Engine starts',
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry

    def record(self, event: Event) -> None:
        """Global event-bus subscriber."""
        t = event.type
        data = event.data
        if t == EventType.INTENT_DISCOVERED:
            self.intents_discovered.labels(source=event.source or "unknown").inc()
        elif t == EventType.INTENT_REJECTED:
            self.intents_rejected.inc()
        elif t in _EVALUATION_OUTCOMES:
            self.orders_evaluated.labels(outcome=_EVALUATION_OUTCOMES[t]).inc()
            margin = data.get("margin_pct")
            if margin is not None:
                self.order_margin_pct.observe(float(margin))
        elif t == EventType.TRANSACTION_PENDING:
            self.transactions_submitted.labels(tx_type=_tx_label(data)).inc()
        elif t == EventType.TRANSACTION_CONFIRMED:
            self.transactions_finished.labels(tx_type=_tx_label(data), outcome="confirmed").inc()
        elif t == EventType.TRANSACTION_FAILED:
            self.transactions_finished.labels(tx_type=_tx_label(data), outcome="failed").inc()
        elif t == EventType.PROOF_READY:
            self.proofs_ready.inc()
        elif t == EventType.MONITOR_TIMEOUT:
            self.monitor_timeouts.inc()
        elif t == EventType.ORDER_COMPLETED:
            self.orders_completed.inc()
        elif t == EventType.ORDER_FAILED:
            reason = str(data.get("reason") or "")
            self.orders_failed.labels(stage=reason.split(":", 1)[0] or "unknown").inc()
        elif t == EventType.RECOVERY_COMPLETED:
            self.recovered_orders.inc(data.get("scanned", 0))
        elif t == EventType.ENGINE_STARTED:
            self.engine_started.inc()


_EVALUATION_OUTCOMES = {
    EventType.ORDER_VALIDATED: "validated",
    EventType.ORDER_REJECTED: "rejected",
    EventType.ORDER_SKIPPED: "skipped",
    EventType.ORDER_DEFERRED: "deferred",
}


def _tx_label(data) -> str:
    tx_type = data.get("tx_type")
    return getattr(tx_type, "value", str(tx_type))


def start_metrics_server(port: int, metrics: EngineMetrics) -> None:
    """Expose /metrics on the given port."""
    start_http_server(port, registry=metrics.get_registry())
