"""
ContextBuilder: per-order execution context for profitability and strategy.

Reads the current gas price on every chain the order touches and the
solver's balance of every asset it must pay out. Reads run concurrently.
A failed read is recorded as None (unknown) rather than raised: the
strategy treats unknown gas as a transient Defer and unknown balance as a
Skip, so the decision is still surfaced.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional, Tuple

from solver_engine.core.interfaces import DeliveryService
from solver_engine.core.types import AssetAmount, ExecutionContext, Order

log = logging.getLogger("solver")


class ContextBuilder:
    def __init__(
        self,
        delivery: DeliveryService,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.delivery = delivery
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.warning(json.dumps({"event": event, **kwargs}))

    async def build(self, order: Order) -> ExecutionContext:
        chains = order.relevant_chains
        gas_results = await asyncio.gather(
            *(self._gas_price(order.id, chain_id) for chain_id in chains)
        )
        balance_results = await asyncio.gather(
            *(self._balance(order, asset) for asset in order.outputs)
        )

        context = ExecutionContext()
        for chain_id, price in zip(chains, gas_results):
            context.gas_prices[chain_id] = price
        for label, balance in balance_results:
            context.balances[label] = balance

        log.debug(
            "context_built order=%s gas=%s balances=%s",
            order.id, context.gas_prices, context.balances,
        )
        return context

    async def _gas_price(self, order_id: str, chain_id: int) -> Optional[int]:
        try:
            return int(await self.delivery.get_gas_price(chain_id))
        except Exception as e:
            self._log_event(
                "context_gas_price_error",
                order_id=order_id,
                chain_id=chain_id,
                error=str(e),
            )
            return None

    async def _balance(self, order: Order, asset: AssetAmount) -> Tuple[str, Optional[int]]:
        try:
            balance = await self.delivery.get_balance(
                order.solver_address, asset.token, asset.chain_id
            )
            return asset.label, int(balance)
        except Exception as e:
            self._log_event(
                "context_balance_error",
                order_id=order.id,
                asset=asset.label,
                error=str(e),
            )
            return asset.label, None
