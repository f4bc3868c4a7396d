"""
Monitoring package.

Settlement monitoring and Prometheus metrics.
"""

from solver_engine.monitoring.settlement_monitor import SettlementMonitor, poll_budget
from solver_engine.monitoring.metrics_rich import EngineMetrics, start_metrics_server

__all__ = ["SettlementMonitor", "poll_budget", "EngineMetrics", "start_metrics_server"]
