"""
Pytest configuration, fake collaborators and fixtures.
Adds the repo root to sys.path so tests can import solver_engine uninstalled.
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from solver_engine.core.event_bus import EventBus
from solver_engine.core.interfaces import SettlementRegistry, StandardRegistry
from solver_engine.core.types import (
    AssetAmount,
    ExecutionParams,
    FillProof,
    Intent,
    Order,
    OrderStatus,
    Transaction,
    TransactionReceipt,
)
from solver_engine.core.utils import GWEI, now_s
from solver_engine.execution.transaction_submitter import TransactionSubmitter
from solver_engine.orchestrator.solver_engine import EngineConfig, SolverEngine
from solver_engine.state.order_state_machine import OrderStateMachine
from solver_engine.state.store import MemoryStore
from solver_engine.strategy.strategy import SimpleStrategy

ORIGIN = 1
DEST = 10
SOLVER = "0x00000000000000000000000000000000000050f5"
TOKEN_IN = "0xinput"
TOKEN_OUT = "0xoutput"
STANDARD = "eip7683"


# =============================================================================
# Fake collaborators
# =============================================================================

class FakeDelivery:
    """In-memory chain: hashes are sequential, receipts derive from tx metadata."""

    def __init__(self) -> None:
        self.gas_prices: Dict[int, object] = {ORIGIN: 10 * GWEI, DEST: 10 * GWEI}
        self.balances: Dict[Tuple[int, str], int] = {(DEST, TOKEN_OUT): 10**30}
        self.gas_estimate = 100_000
        self.submitted: List[Transaction] = []
        self.by_hash: Dict[str, Transaction] = {}
        self.receipts: Dict[str, TransactionReceipt] = {}
        self.revert_types: Set[str] = set()
        self.submit_error: Optional[Exception] = None
        self.hold_confirmations = False
        self.release = asyncio.Event()
        self.wait_calls: List[str] = []
        self.call_calls: List[Tuple[int, bytes]] = []

    async def submit(self, tx: Transaction) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        tx_hash = f"0x{len(self.submitted) + 1:064x}"
        self.submitted.append(tx)
        self.by_hash[tx_hash] = tx
        return tx_hash

    def receipt_for(self, tx_hash: str) -> TransactionReceipt:
        tx = self.by_hash[tx_hash]
        success = tx.metadata.get("type") not in self.revert_types
        return TransactionReceipt(
            tx_hash=tx_hash,
            chain_id=tx.chain_id,
            success=success,
            block_number=100,
            gas_used=21_000,
            error=None if success else "execution reverted",
        )

    async def wait_for_confirmation(self, tx_hash: str, chain_id: int, confirmations: int) -> TransactionReceipt:
        self.wait_calls.append(tx_hash)
        if self.hold_confirmations:
            await self.release.wait()
        return self.receipt_for(tx_hash)

    async def get_receipt(self, tx_hash: str, chain_id: int) -> Optional[TransactionReceipt]:
        return self.receipts.get(tx_hash)

    async def get_gas_price(self, chain_id: int) -> int:
        price = self.gas_prices.get(chain_id)
        if price is None:
            raise ConnectionError(f"rpc unavailable for chain {chain_id}")
        if isinstance(price, Exception):
            raise price
        return price

    async def get_balance(self, address: str, token: str, chain_id: int) -> int:
        return self.balances.get((chain_id, token), 0)

    async def estimate_gas(self, tx: Transaction) -> int:
        return self.gas_estimate

    async def call(self, chain_id: int, call_data: bytes) -> bytes:
        self.call_calls.append((chain_id, call_data))
        return b"\x01" * 32

    def types_submitted(self) -> List[str]:
        return [tx.metadata.get("type") for tx in self.submitted]


class FakeStandard:
    """Order standard whose orders come straight from the intent's data dict."""

    def __init__(self, needs_prepare: bool = False) -> None:
        self.needs_prepare = needs_prepare
        self.validation_error: Optional[Exception] = None
        self.fill_error: Optional[Exception] = None
        self.created: List[str] = []
        self.fill_params: List[ExecutionParams] = []

    async def validate_order(self, order_bytes: bytes) -> None:
        if self.validation_error is not None:
            raise self.validation_error

    async def validate_and_create_order(self, order_bytes, data, lock_type, order_id_callback, solver_address) -> Order:
        await self.validate_order(order_bytes)
        await order_id_callback(ORIGIN, order_bytes)
        order = Order(
            id=data["order_id"],
            standard=STANDARD,
            solver_address=solver_address,
            data=dict(data),
            inputs=[AssetAmount(ORIGIN, TOKEN_IN, int(data.get("input", 100)))],
            outputs=[AssetAmount(DEST, TOKEN_OUT, int(data.get("output", 50)))],
        )
        self.created.append(order.id)
        return order

    async def generate_prepare_transaction(self, order: Order) -> Optional[Transaction]:
        if not self.needs_prepare:
            return None
        return Transaction(chain_id=ORIGIN, to="0xsettler", metadata={"type": "prepare", "order_id": order.id})

    async def generate_fill_transaction(self, order: Order, params: ExecutionParams) -> Transaction:
        if self.fill_error is not None:
            raise self.fill_error
        self.fill_params.append(params)
        return Transaction(
            chain_id=DEST,
            to="0xoutputsettler",
            gas_price=params.gas_price,
            priority_fee=params.priority_fee,
            metadata={"type": "fill", "order_id": order.id},
        )

    async def generate_claim_transaction(self, order: Order, proof: FillProof) -> Transaction:
        return Transaction(chain_id=ORIGIN, to="0xinputsettler", metadata={"type": "claim", "order_id": order.id})


class FakeSettlement:
    """Settlement whose attestation/claimability answers are scripted by call count."""

    def __init__(
        self,
        post_fill: bool = False,
        pre_claim: bool = False,
        attestation_after: int = 0,
        claimable_after: int = 0,
        never_claimable: bool = False,
        interval: float = 0.01,
    ) -> None:
        self.post_fill = post_fill
        self.pre_claim = pre_claim
        self.attestation_after = attestation_after
        self.claimable_after = claimable_after
        self.never_claimable = never_claimable
        self.interval = interval
        self.attestation_calls = 0
        self.claim_checks = 0
        self.poll_error: Optional[Exception] = None

    async def generate_post_fill_transaction(self, order, fill_receipt) -> Optional[Transaction]:
        if not self.post_fill:
            return None
        return Transaction(chain_id=DEST, to="0xoracle", metadata={"type": "post_fill", "order_id": order.id})

    async def generate_pre_claim_transaction(self, order, proof) -> Optional[Transaction]:
        if not self.pre_claim:
            return None
        return Transaction(chain_id=ORIGIN, to="0xoracle", metadata={"type": "pre_claim", "order_id": order.id})

    async def get_attestation(self, order, fill_tx_hash) -> Optional[FillProof]:
        self.attestation_calls += 1
        if self.poll_error is not None:
            raise self.poll_error
        if self.attestation_calls <= self.attestation_after:
            return None
        return FillProof(
            tx_hash=fill_tx_hash or "0xfill",
            filled_timestamp=now_s(),
            block_number=100,
            oracle_address="0xoracle",
            attestation_data=b"\xaa",
        )

    async def can_claim(self, order, proof) -> bool:
        self.claim_checks += 1
        if self.poll_error is not None:
            raise self.poll_error
        if self.never_claimable:
            return False
        return self.claim_checks > self.claimable_after

    def poll_interval_seconds(self) -> float:
        return self.interval

    @property
    def polls(self) -> int:
        return self.attestation_calls + self.claim_checks


class FakePricing:
    """1 value unit per token unit; native amounts priced per whole coin (1e18 wei)."""

    def __init__(self, native_price: Decimal = Decimal(1)) -> None:
        self.native_price = native_price
        self.asset_prices: Dict[str, Decimal] = {}

    async def native_to_value(self, chain_id: int, amount: int) -> Decimal:
        return Decimal(amount) / Decimal(10**18) * self.native_price

    async def asset_to_value(self, chain_id: int, token: str, amount: int) -> Decimal:
        return Decimal(amount) * self.asset_prices.get(token, Decimal(1))


# =============================================================================
# Builders
# =============================================================================

def make_order(
    order_id: str = "order-1",
    status: OrderStatus = OrderStatus.PENDING,
    input_amount: int = 100,
    output_amount: int = 50,
    **kwargs,
) -> Order:
    return Order(
        id=order_id,
        standard=STANDARD,
        solver_address=SOLVER,
        inputs=[AssetAmount(ORIGIN, TOKEN_IN, input_amount)],
        outputs=[AssetAmount(DEST, TOKEN_OUT, output_amount)],
        status=status,
        **kwargs,
    )


def make_intent(intent_id: str = "intent-1", order_id: str = "order-1", **data) -> Intent:
    payload = {"order_id": order_id, **data}
    return Intent(
        id=intent_id,
        source="test",
        standard=STANDARD,
        order_bytes=b"\x01\x02",
        data=payload,
        lock_type="permit2",
    )


async def wait_for(predicate, bus: Optional[EventBus] = None, timeout: float = 3.0) -> bool:
    """Drive the bus (if given) until an async predicate holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if bus is not None:
            await bus.drain(timeout=0.2)
        if await predicate():
            return True
        await asyncio.sleep(0.01)
    return False


async def wait_for_status(engine: SolverEngine, order_id: str, status: OrderStatus, timeout: float = 3.0) -> bool:
    async def _check() -> bool:
        if not await engine.state_machine.exists(order_id):
            return False
        return (await engine.state_machine.get_order(order_id)).status == status

    return await wait_for(_check, engine.bus, timeout)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def bus():
    return EventBus(history_size=1000)


@pytest.fixture
def state_machine(store):
    return OrderStateMachine(store)


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def standard():
    return FakeStandard()


@pytest.fixture
def settlement():
    return FakeSettlement()


@pytest.fixture
def pricing():
    return FakePricing()


@pytest.fixture
def standards(standard):
    return StandardRegistry({STANDARD: standard})


@pytest.fixture
def settlements(settlement):
    return SettlementRegistry({"direct": settlement}, default="direct")


@pytest.fixture
def submitter(delivery, state_machine, bus):
    return TransactionSubmitter(delivery, state_machine, bus)


@pytest.fixture
def strategy():
    return SimpleStrategy(max_gas_price=100 * GWEI, defer_seconds=60, priority_fee=GWEI)


@pytest.fixture
def engine_factory(store, delivery, standards, settlements, pricing, strategy):
    """Build an engine over the shared fakes; keyword args override EngineConfig."""

    def _make(metrics=None, **overrides) -> SolverEngine:
        params = dict(
            solver_address=SOLVER,
            min_profitability_pct=1.0,
            claim_batch_size=1,
            claim_batch_window_sec=0.0,
            monitoring_timeout_minutes=1.0,
        )
        params.update(overrides)
        return SolverEngine(
            EngineConfig(**params),
            standards,
            settlements,
            delivery,
            pricing,
            store,
            strategy,
            metrics=metrics,
        )

    return _make
