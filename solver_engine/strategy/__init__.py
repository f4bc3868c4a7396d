"""
Strategy package.

Execution strategies and the factory that builds them from settings.
"""

from solver_engine.strategy.strategy import ExecutionStrategy, SimpleStrategy
from solver_engine.strategy.strategy_factory import StrategyFactory

__all__ = ["ExecutionStrategy", "SimpleStrategy", "StrategyFactory"]
