"""
Cost/Profit Evaluator: estimate what executing an order costs and gate it on margin.

Cost model:
    For every transaction the order is expected to need
    (prepare if the standard asks for one, fill, claim, plus optional
    post-fill / pre-claim overheads):
        native_cost = gas_units * gas_price
        value       = pricing.native_to_value(chain_id, native_cost)

Margin:
    margin_pct = (input_value - output_value - operating_cost) / input_value * 100

The margin check is a pure function of (CostEstimate, min_profitability_pct).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, List, Optional

from solver_engine.core.interfaces import DeliveryService, OrderStandard, PricingService
from solver_engine.core.types import (
    CostComponent,
    CostEstimate,
    ExecutionContext,
    ExecutionParams,
    Order,
    Transaction,
    TransactionType,
)

log = logging.getLogger("solver")


@dataclass
class ProfitabilityConfig:
    """Configuration for the cost/profit evaluator."""
    min_profitability_pct: float = 1.0

    # Used when estimate_gas fails or no transaction can be generated up front
    prepare_gas_units: int = 150_000
    fill_gas_units: int = 300_000
    claim_gas_units: int = 200_000
    # Settlement overheads; 0 = not expected
    post_fill_gas_units: int = 0
    pre_claim_gas_units: int = 0

    log_event_callback: Optional[Callable[..., None]] = None


@dataclass(frozen=True)
class ProfitabilityResult:
    accepted: bool
    margin_pct: Optional[Decimal]
    min_profitability_pct: Decimal
    reason: Optional[str] = None


def compute_margin_pct(
    input_value: Decimal,
    output_value: Decimal,
    operating_cost: Decimal,
) -> Optional[Decimal]:
    """(input - output - cost) / input * 100, or None when input value is not positive."""
    if input_value <= 0:
        return None
    return (input_value - output_value - operating_cost) / input_value * Decimal(100)


def check_profitability(estimate: CostEstimate, min_profitability_pct: float) -> ProfitabilityResult:
    """Accept iff the margin is at least the configured threshold."""
    threshold = Decimal(str(min_profitability_pct))
    margin = compute_margin_pct(estimate.input_value, estimate.output_value, estimate.total_cost)
    if margin is None:
        return ProfitabilityResult(
            accepted=False,
            margin_pct=None,
            min_profitability_pct=threshold,
            reason="order has no input value",
        )
    if margin < threshold:
        return ProfitabilityResult(
            accepted=False,
            margin_pct=margin,
            min_profitability_pct=threshold,
            reason=f"margin {margin:.4f}% below minimum {threshold}%",
        )
    return ProfitabilityResult(accepted=True, margin_pct=margin, min_profitability_pct=threshold)


class ProfitabilityEvaluator:
    """
    Builds CostEstimates from gas estimates and prices.

    Usage:
        evaluator = ProfitabilityEvaluator(delivery, pricing, config)
        estimate = await evaluator.estimate_cost(order, standard, context)
        result = evaluator.check(estimate)
    """

    def __init__(
        self,
        delivery: DeliveryService,
        pricing: PricingService,
        config: Optional[ProfitabilityConfig] = None,
    ) -> None:
        self.delivery = delivery
        self.pricing = pricing
        self.config = config or ProfitabilityConfig()
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def check(self, estimate: CostEstimate) -> ProfitabilityResult:
        return check_profitability(estimate, self.config.min_profitability_pct)

    async def estimate_cost(
        self,
        order: Order,
        standard: OrderStandard,
        context: ExecutionContext,
    ) -> CostEstimate:
        estimate = CostEstimate()
        estimate.input_value = await self._sum_value(order.inputs)
        estimate.output_value = await self._sum_value(order.outputs)

        origin_chain = order.input_chains[0] if order.input_chains else None
        dest_chain = order.output_chains[0] if order.output_chains else origin_chain

        prepare_tx = await standard.generate_prepare_transaction(order)
        if prepare_tx is not None:
            estimate.components.append(
                await self._component(
                    TransactionType.PREPARE, prepare_tx.chain_id, context,
                    tx=prepare_tx, fallback_units=self.config.prepare_gas_units,
                )
            )

        fill_tx: Optional[Transaction] = None
        if dest_chain is not None:
            params = ExecutionParams(gas_price=context.gas_prices.get(dest_chain) or 0)
            try:
                fill_tx = await standard.generate_fill_transaction(order, params)
            except Exception as e:
                self._log_event("cost_fill_generation_error", order_id=order.id, error=str(e))
        fill_chain = fill_tx.chain_id if fill_tx is not None else dest_chain
        if fill_chain is not None:
            estimate.components.append(
                await self._component(
                    TransactionType.FILL, fill_chain, context,
                    tx=fill_tx, fallback_units=self.config.fill_gas_units,
                )
            )

        if fill_chain is not None and self.config.post_fill_gas_units > 0:
            estimate.components.append(
                await self._component(
                    TransactionType.POST_FILL, fill_chain, context,
                    fallback_units=self.config.post_fill_gas_units,
                )
            )
        if origin_chain is not None:
            if self.config.pre_claim_gas_units > 0:
                estimate.components.append(
                    await self._component(
                        TransactionType.PRE_CLAIM, origin_chain, context,
                        fallback_units=self.config.pre_claim_gas_units,
                    )
                )
            estimate.components.append(
                await self._component(
                    TransactionType.CLAIM, origin_chain, context,
                    fallback_units=self.config.claim_gas_units,
                )
            )

        self._log_event(
            "cost_estimated",
            order_id=order.id,
            input_value=str(estimate.input_value),
            output_value=str(estimate.output_value),
            total_cost=str(estimate.total_cost),
            components=summarize(estimate.components),
        )
        return estimate

    async def _sum_value(self, assets) -> Decimal:
        total = Decimal(0)
        for asset in assets:
            total += await self.pricing.asset_to_value(asset.chain_id, asset.token, asset.amount)
        return total

    async def _component(
        self,
        tx_type: TransactionType,
        chain_id: int,
        context: ExecutionContext,
        fallback_units: int,
        tx: Optional[Transaction] = None,
    ) -> CostComponent:
        gas_units = fallback_units
        if tx is not None:
            try:
                gas_units = int(await self.delivery.estimate_gas(tx))
            except Exception as e:
                self._log_event(
                    "cost_gas_estimate_fallback",
                    tx_type=tx_type.value,
                    chain_id=chain_id,
                    fallback_units=fallback_units,
                    error=str(e),
                )

        gas_price = context.gas_prices.get(chain_id)
        if gas_price is None:
            # Unknown gas is caught by the strategy as a Defer
            gas_price = 0

        native_cost = gas_units * gas_price
        value = await self.pricing.native_to_value(chain_id, native_cost)
        return CostComponent(
            tx_type=tx_type,
            chain_id=chain_id,
            gas_units=gas_units,
            gas_price=gas_price,
            native_cost=native_cost,
            value=Decimal(value),
        )


def summarize(components: List[CostComponent]) -> List[dict]:
    """Compact representation for events/logs."""
    return [
        {
            "tx_type": c.tx_type.value,
            "chain_id": c.chain_id,
            "gas_units": c.gas_units,
            "gas_price": c.gas_price,
            "value": str(c.value),
        }
        for c in components
    ]
