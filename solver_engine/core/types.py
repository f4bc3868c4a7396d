"""
Domain types shared by every engine component.

Intents are immutable discovery output. Orders are the stateful unit the
engine drives from PENDING to FINALIZED. Everything persisted has a
to_dict/from_dict pair producing JSON-compatible dicts; bytes are stored as
0x-prefixed hex and Decimals as strings.

Order lifecycle:

    PENDING -> EXECUTING -> EXECUTED -> POST_FILLED -> SETTLED -> PRE_CLAIMED -> FINALIZED
       |           |            |             |            |            |
       +-----------+------------+-------------+------------+------------+----> FAILED

POST_FILLED and PRE_CLAIMED are always recorded, even when the settlement
collaborator reports that no transaction is needed for that stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from solver_engine.core.utils import bytes_from_hex, hex_bytes, now_ms, now_s

# Failure reason recorded when the settlement monitor exhausts its budget.
TIMED_OUT = "timed_out"


class OrderStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    EXECUTED = "executed"
    POST_FILLED = "post_filled"
    SETTLED = "settled"
    PRE_CLAIMED = "pre_claimed"
    FINALIZED = "finalized"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# Forward order of the lifecycle; FAILED sits outside it.
STATUS_SEQUENCE: List[OrderStatus] = [
    OrderStatus.PENDING,
    OrderStatus.EXECUTING,
    OrderStatus.EXECUTED,
    OrderStatus.POST_FILLED,
    OrderStatus.SETTLED,
    OrderStatus.PRE_CLAIMED,
    OrderStatus.FINALIZED,
]

TERMINAL_STATUSES = frozenset({OrderStatus.FINALIZED, OrderStatus.FAILED})


class TransactionType(Enum):
    PREPARE = "prepare"
    FILL = "fill"
    POST_FILL = "post_fill"
    PRE_CLAIM = "pre_claim"
    CLAIM = "claim"


# Status an order must hold while the given stage's transaction is in flight.
STAGE_STATUS: Dict[TransactionType, OrderStatus] = {
    TransactionType.PREPARE: OrderStatus.PENDING,
    TransactionType.FILL: OrderStatus.EXECUTING,
    TransactionType.POST_FILL: OrderStatus.EXECUTED,
    TransactionType.PRE_CLAIM: OrderStatus.SETTLED,
    TransactionType.CLAIM: OrderStatus.PRE_CLAIMED,
}


@dataclass(frozen=True)
class AssetAmount:
    chain_id: int
    token: str
    amount: int

    @property
    def label(self) -> str:
        return f"{self.chain_id}:{self.token}"

    def to_dict(self) -> Dict[str, Any]:
        return {"chain_id": self.chain_id, "token": self.token, "amount": str(self.amount)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AssetAmount":
        return cls(chain_id=int(d["chain_id"]), token=d["token"], amount=int(d["amount"]))


@dataclass(frozen=True)
class IntentMetadata:
    requires_auction: bool = False
    exclusive_until: Optional[int] = None
    discovered_at: int = field(default_factory=now_s)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requires_auction": self.requires_auction,
            "exclusive_until": self.exclusive_until,
            "discovered_at": self.discovered_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "IntentMetadata":
        return cls(
            requires_auction=bool(d.get("requires_auction", False)),
            exclusive_until=d.get("exclusive_until"),
            discovered_at=int(d.get("discovered_at", 0)),
        )


@dataclass(frozen=True)
class Intent:
    """A discovered cross-chain trade request, before solver commitment."""
    id: str
    source: str
    standard: str
    order_bytes: bytes
    data: Dict[str, Any] = field(default_factory=dict)
    lock_type: str = ""
    quote_id: Optional[str] = None
    metadata: IntentMetadata = field(default_factory=IntentMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "standard": self.standard,
            "order_bytes": hex_bytes(self.order_bytes),
            "data": self.data,
            "lock_type": self.lock_type,
            "quote_id": self.quote_id,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Intent":
        return cls(
            id=d["id"],
            source=d.get("source", ""),
            standard=d["standard"],
            order_bytes=bytes_from_hex(d.get("order_bytes", "0x")),
            data=d.get("data") or {},
            lock_type=d.get("lock_type", ""),
            quote_id=d.get("quote_id"),
            metadata=IntentMetadata.from_dict(d.get("metadata") or {}),
        )


@dataclass
class Transaction:
    """Unsigned transaction description; opaque to the engine beyond chain_id."""
    chain_id: int
    to: Optional[str] = None
    data: bytes = b""
    value: int = 0
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None
    priority_fee: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransactionReceipt:
    tx_hash: str
    chain_id: int
    success: bool
    block_number: int = 0
    gas_used: int = 0
    error: Optional[str] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class TransactionRef:
    tx_hash: str
    chain_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {"tx_hash": self.tx_hash, "chain_id": self.chain_id}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TransactionRef":
        return cls(tx_hash=d["tx_hash"], chain_id=int(d["chain_id"]))


@dataclass(frozen=True)
class FillProof:
    tx_hash: str
    filled_timestamp: int
    block_number: int = 0
    oracle_address: Optional[str] = None
    attestation_data: Optional[bytes] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "filled_timestamp": self.filled_timestamp,
            "block_number": self.block_number,
            "oracle_address": self.oracle_address,
            "attestation_data": (
                hex_bytes(self.attestation_data) if self.attestation_data is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FillProof":
        raw = d.get("attestation_data")
        return cls(
            tx_hash=d["tx_hash"],
            filled_timestamp=int(d["filled_timestamp"]),
            block_number=int(d.get("block_number", 0)),
            oracle_address=d.get("oracle_address"),
            attestation_data=bytes_from_hex(raw) if raw is not None else None,
        )


@dataclass(frozen=True)
class ExecutionParams:
    gas_price: int
    priority_fee: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"gas_price": str(self.gas_price), "priority_fee": (
            str(self.priority_fee) if self.priority_fee is not None else None
        )}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExecutionParams":
        fee = d.get("priority_fee")
        return cls(gas_price=int(d["gas_price"]), priority_fee=int(fee) if fee is not None else None)


class DecisionKind(Enum):
    EXECUTE = "execute"
    SKIP = "skip"
    DEFER = "defer"


@dataclass(frozen=True)
class ExecutionDecision:
    """Execute(params) | Skip(reason) | Defer(seconds)."""
    kind: DecisionKind
    params: Optional[ExecutionParams] = None
    reason: Optional[str] = None
    defer_seconds: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def execute(cls, params: ExecutionParams) -> "ExecutionDecision":
        return cls(kind=DecisionKind.EXECUTE, params=params)

    @classmethod
    def skip(cls, reason: str, **details: Any) -> "ExecutionDecision":
        return cls(kind=DecisionKind.SKIP, reason=reason, details=details)

    @classmethod
    def defer(cls, seconds: float, reason: Optional[str] = None) -> "ExecutionDecision":
        return cls(kind=DecisionKind.DEFER, defer_seconds=seconds, reason=reason)


@dataclass
class ExecutionContext:
    """Per-evaluation snapshot of gas prices and solver balances. Never persisted."""
    gas_prices: Dict[int, Optional[int]] = field(default_factory=dict)
    balances: Dict[str, Optional[int]] = field(default_factory=dict)
    timestamp_ms: int = field(default_factory=now_ms)

    def max_gas_price(self, chain_ids: Optional[List[int]] = None) -> Optional[int]:
        """Highest observed gas price; None if any relevant chain is unknown."""
        chains = chain_ids if chain_ids is not None else list(self.gas_prices)
        prices = [self.gas_prices.get(c) for c in chains]
        if not prices or any(p is None for p in prices):
            return None
        return max(prices)  # type: ignore[type-var]


@dataclass
class CostComponent:
    tx_type: TransactionType
    chain_id: int
    gas_units: int
    gas_price: int
    native_cost: int
    value: Decimal


@dataclass
class CostEstimate:
    components: List[CostComponent] = field(default_factory=list)
    input_value: Decimal = Decimal(0)
    output_value: Decimal = Decimal(0)

    @property
    def total_cost(self) -> Decimal:
        return sum((c.value for c in self.components), Decimal(0))


@dataclass
class StateTransition:
    """Record of a status change, kept on the order as an audit trail."""
    from_status: OrderStatus
    to_status: OrderStatus
    timestamp_ms: int
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_status.value,
            "to": self.to_status.value,
            "ts": self.timestamp_ms,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StateTransition":
        return cls(
            from_status=OrderStatus(d["from"]),
            to_status=OrderStatus(d["to"]),
            timestamp_ms=int(d["ts"]),
            reason=d.get("reason"),
        )


@dataclass
class Order:
    id: str
    standard: str
    solver_address: str
    data: Dict[str, Any] = field(default_factory=dict)
    inputs: List[AssetAmount] = field(default_factory=list)
    outputs: List[AssetAmount] = field(default_factory=list)
    status: OrderStatus = OrderStatus.PENDING
    settlement: Optional[str] = None
    created_at_ms: int = field(default_factory=now_ms)
    updated_at_ms: int = 0

    transactions: Dict[TransactionType, TransactionRef] = field(default_factory=dict)
    fill_proof: Optional[FillProof] = None
    execution_params: Optional[ExecutionParams] = None
    failure_reason: Optional[str] = None
    history: List[StateTransition] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.updated_at_ms == 0:
            self.updated_at_ms = self.created_at_ms

    @property
    def input_chains(self) -> List[int]:
        return sorted({a.chain_id for a in self.inputs})

    @property
    def output_chains(self) -> List[int]:
        return sorted({a.chain_id for a in self.outputs})

    @property
    def relevant_chains(self) -> List[int]:
        return sorted(set(self.input_chains) | set(self.output_chains))

    def tx_hash(self, tx_type: TransactionType) -> Optional[str]:
        ref = self.transactions.get(tx_type)
        return ref.tx_hash if ref else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "standard": self.standard,
            "solver_address": self.solver_address,
            "data": self.data,
            "inputs": [a.to_dict() for a in self.inputs],
            "outputs": [a.to_dict() for a in self.outputs],
            "status": self.status.value,
            "settlement": self.settlement,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "transactions": {t.value: ref.to_dict() for t, ref in self.transactions.items()},
            "fill_proof": self.fill_proof.to_dict() if self.fill_proof else None,
            "execution_params": (
                self.execution_params.to_dict() if self.execution_params else None
            ),
            "failure_reason": self.failure_reason,
            "history": [t.to_dict() for t in self.history],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Order":
        proof = d.get("fill_proof")
        params = d.get("execution_params")
        return cls(
            id=d["id"],
            standard=d["standard"],
            solver_address=d["solver_address"],
            data=d.get("data") or {},
            inputs=[AssetAmount.from_dict(a) for a in d.get("inputs", [])],
            outputs=[AssetAmount.from_dict(a) for a in d.get("outputs", [])],
            status=OrderStatus(d.get("status", OrderStatus.PENDING.value)),
            settlement=d.get("settlement"),
            created_at_ms=int(d.get("created_at_ms", 0)),
            updated_at_ms=int(d.get("updated_at_ms", 0)),
            transactions={
                TransactionType(k): TransactionRef.from_dict(v)
                for k, v in (d.get("transactions") or {}).items()
            },
            fill_proof=FillProof.from_dict(proof) if proof else None,
            execution_params=ExecutionParams.from_dict(params) if params else None,
            failure_reason=d.get("failure_reason"),
            history=[StateTransition.from_dict(t) for t in d.get("history", [])],
        )
