"""
Configuration package.

This package contains configuration loading and validation.
"""

from solver_engine.config.config import Settings, env_bool

__all__ = [
    "Settings",
    "env_bool",
]
