"""
Collaborator contracts the engine depends on.

Implementations (chain RPC, protocol encoders, oracle clients, databases,
price feeds) live outside the engine. Protocol standards and settlement
mechanisms are pluggable: the engine holds registries keyed by a string tag
and dispatches without knowing concrete types.
"""

from __future__ import annotations

from decimal import Decimal
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    Optional,
    Protocol,
    TypeVar,
)

from solver_engine.core.exceptions import UnsupportedStandardError
from solver_engine.core.types import (
    ExecutionParams,
    FillProof,
    Order,
    Transaction,
    TransactionReceipt,
)

# async (chain_id, call_data) -> return data; resolves protocol-defined order ids.
OrderIdCallback = Callable[[int, bytes], Awaitable[bytes]]


class OrderStandard(Protocol):
    """Protocol-specific order handling (e.g. one cross-chain order format)."""

    async def validate_order(self, order_bytes: bytes) -> None:
        ...

    async def validate_and_create_order(
        self,
        order_bytes: bytes,
        data: Dict[str, Any],
        lock_type: str,
        order_id_callback: OrderIdCallback,
        solver_address: str,
    ) -> Order:
        ...

    async def generate_prepare_transaction(self, order: Order) -> Optional[Transaction]:
        ...

    async def generate_fill_transaction(
        self, order: Order, params: ExecutionParams
    ) -> Transaction:
        ...

    async def generate_claim_transaction(self, order: Order, proof: FillProof) -> Transaction:
        ...


class SettlementService(Protocol):
    """Fill-proof mechanics for one oracle/bridge."""

    async def generate_post_fill_transaction(
        self, order: Order, fill_receipt: TransactionReceipt
    ) -> Optional[Transaction]:
        ...

    async def generate_pre_claim_transaction(
        self, order: Order, proof: FillProof
    ) -> Optional[Transaction]:
        ...

    async def get_attestation(self, order: Order, fill_tx_hash: str) -> Optional[FillProof]:
        ...

    async def can_claim(self, order: Order, proof: FillProof) -> bool:
        ...

    def poll_interval_seconds(self) -> float:
        ...


class DeliveryService(Protocol):
    """Transaction submission and chain reads. Owns signing and resubmission."""

    async def submit(self, tx: Transaction) -> str:
        ...

    async def wait_for_confirmation(
        self, tx_hash: str, chain_id: int, confirmations: int
    ) -> TransactionReceipt:
        ...

    async def get_receipt(self, tx_hash: str, chain_id: int) -> Optional[TransactionReceipt]:
        ...

    async def get_gas_price(self, chain_id: int) -> int:
        ...

    async def get_balance(self, address: str, token: str, chain_id: int) -> int:
        ...

    async def estimate_gas(self, tx: Transaction) -> int:
        ...

    async def call(self, chain_id: int, call_data: bytes) -> bytes:
        ...


class StorageBackend(Protocol):
    """Namespaced keyed store holding JSON-compatible dicts."""

    async def exists(self, namespace: str, key: str) -> bool:
        ...

    async def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, namespace: str, key: str, value: Dict[str, Any]) -> None:
        ...

    async def set_if_absent(self, namespace: str, key: str, value: Dict[str, Any]) -> bool:
        ...

    async def delete(self, namespace: str, key: str) -> bool:
        ...

    async def list(
        self,
        namespace: str,
        filter_fn: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[Dict[str, Any]]:
        ...


class PricingService(Protocol):
    """Converts on-chain amounts to a common value unit (e.g. USD)."""

    async def native_to_value(self, chain_id: int, amount: int) -> Decimal:
        ...

    async def asset_to_value(self, chain_id: int, token: str, amount: int) -> Decimal:
        ...


T = TypeVar("T")


class Registry(Generic[T]):
    """String-keyed registry of pluggable implementations."""

    def __init__(self, entries: Optional[Dict[str, T]] = None, default: Optional[str] = None) -> None:
        self._entries: Dict[str, T] = dict(entries or {})
        self._default = default

    def register(self, key: str, impl: T) -> None:
        self._entries[key] = impl

    def get(self, key: Optional[str]) -> Optional[T]:
        if key is not None and key in self._entries:
            return self._entries[key]
        if self._default is not None:
            return self._entries.get(self._default)
        if key is None and len(self._entries) == 1:
            return next(iter(self._entries.values()))
        return None

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class StandardRegistry(Registry[OrderStandard]):
    def require(self, key: str) -> OrderStandard:
        impl = self._entries.get(key)
        if impl is None:
            raise UnsupportedStandardError(key)
        return impl


class SettlementRegistry(Registry[SettlementService]):
    pass
