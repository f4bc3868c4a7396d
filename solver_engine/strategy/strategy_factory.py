"""StrategyFactory to create pluggable execution strategy instances."""

from __future__ import annotations

from typing import Any

from solver_engine.core.utils import gwei_to_wei
from solver_engine.strategy.strategy import SimpleStrategy


def _simple(settings, **kwargs) -> SimpleStrategy:
    return SimpleStrategy(
        max_gas_price=gwei_to_wei(settings.max_gas_price_gwei),
        defer_seconds=settings.defer_seconds,
        priority_fee=gwei_to_wei(settings.priority_fee_gwei),
        **kwargs,
    )


class StrategyFactory:
    _registry: dict[str, Any] = {
        "simple": _simple,
    }

    @classmethod
    def register(cls, name: str, ctor) -> None:
        cls._registry[name] = ctor

    @classmethod
    def create(cls, name: str, settings, **kwargs):
        ctor = cls._registry.get(name)
        if ctor is None:
            raise ValueError(f"unknown strategy: {name}")
        return ctor(settings, **kwargs)
