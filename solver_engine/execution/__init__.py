"""
Execution package.

Context building, cost/profit evaluation and transaction submission.
"""

from solver_engine.execution.context_builder import ContextBuilder
from solver_engine.execution.profitability import (
    ProfitabilityConfig,
    ProfitabilityEvaluator,
    ProfitabilityResult,
    check_profitability,
    compute_margin_pct,
)
from solver_engine.execution.transaction_submitter import (
    TransactionSubmitter,
    TransactionSubmitterConfig,
)

__all__ = [
    "ContextBuilder",
    "ProfitabilityConfig",
    "ProfitabilityEvaluator",
    "ProfitabilityResult",
    "check_profitability",
    "compute_margin_pct",
    "TransactionSubmitter",
    "TransactionSubmitterConfig",
]
