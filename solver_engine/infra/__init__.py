"""
Infrastructure package.

Logging setup shared by the engine and the runner.
"""

from solver_engine.infra.logging_cfg import build_logger, log_event, make_log_event

__all__ = ["build_logger", "log_event", "make_log_event"]
