"""
Execution strategies: decide whether a profitable order runs now.

A strategy sees the order and a fresh ExecutionContext and returns exactly
one ExecutionDecision:

    Execute(params)  - submit with these gas parameters
    Skip(reason)     - do not execute; needs operator attention
    Defer(seconds)   - transient condition; re-evaluate later
"""

from __future__ import annotations

import json
import logging
from typing import Optional, Protocol

from solver_engine.core.types import (
    ExecutionContext,
    ExecutionDecision,
    ExecutionParams,
    Order,
)
from solver_engine.core.utils import wei_to_gwei

log = logging.getLogger("solver")


class ExecutionStrategy(Protocol):
    def should_execute(self, order: Order, context: ExecutionContext) -> ExecutionDecision:
        ...


class SimpleStrategy:
    """
    Gas ceiling + balance check.

    - gas unknown on any relevant chain, or max gas above the ceiling -> Defer
    - any output asset with unknown or short solver balance -> Skip
    - otherwise Execute at the max output-chain gas price
    """

    DEFAULT_DEFER_SECONDS = 60.0

    def __init__(
        self,
        max_gas_price: int,
        defer_seconds: float = DEFAULT_DEFER_SECONDS,
        priority_fee: Optional[int] = None,
    ) -> None:
        self.max_gas_price = max_gas_price
        self.defer_seconds = defer_seconds
        self.priority_fee = priority_fee

    def should_execute(self, order: Order, context: ExecutionContext) -> ExecutionDecision:
        gas_price = context.max_gas_price(order.relevant_chains)
        if gas_price is None:
            return ExecutionDecision.defer(self.defer_seconds, reason="gas price unknown")
        if gas_price > self.max_gas_price:
            log.info(json.dumps({
                "event": "strategy_gas_above_ceiling",
                "order_id": order.id,
                "gas_gwei": wei_to_gwei(gas_price),
                "ceiling_gwei": wei_to_gwei(self.max_gas_price),
            }))
            return ExecutionDecision.defer(
                self.defer_seconds,
                reason=f"gas price {gas_price} above ceiling {self.max_gas_price}",
            )

        for asset in order.outputs:
            have = context.balances.get(asset.label)
            if have is None:
                return ExecutionDecision.skip(
                    f"insufficient balance: {asset.label}",
                    have=None,
                    need=asset.amount,
                    shortfall=None,
                )
            if have < asset.amount:
                return ExecutionDecision.skip(
                    f"insufficient balance: {asset.label}",
                    have=have,
                    need=asset.amount,
                    shortfall=asset.amount - have,
                )

        fill_gas = context.max_gas_price(order.output_chains)
        params = ExecutionParams(
            gas_price=fill_gas if fill_gas is not None else gas_price,
            priority_fee=self.priority_fee,
        )
        return ExecutionDecision.execute(params)
