"""
Orchestrator package.

Engine wiring and lifecycle.
"""

from solver_engine.orchestrator.solver_engine import EngineConfig, SolverEngine, build_engine

__all__ = ["EngineConfig", "SolverEngine", "build_engine"]
