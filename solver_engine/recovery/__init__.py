"""
Recovery package.

Startup reconciliation of non-terminal orders.
"""

from solver_engine.recovery.recovery_service import RecoveryService, RecoveryResult

__all__ = ["RecoveryService", "RecoveryResult"]
