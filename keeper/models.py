"""Data models — all frozen (immutable)."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any


@dataclass(frozen=True)
class Block:
    """Ledger block reduced to the two fields the keeper relies on."""

    number: int
    timestamp: int


@dataclass(frozen=True)
class PriceSample:
    timestamp: int
    price: Decimal


@dataclass(frozen=True)
class WithdrawalRequest:
    amount: Decimal
    expiry: int


@dataclass(frozen=True)
class Position:
    """Sponsor position: collateral locked against synthetic debt."""

    sponsor: str
    collateral: Decimal
    debt: Decimal
    withdrawal_request: WithdrawalRequest | None = None


class LiquidationState(IntEnum):
    """Liquidation states as encoded by the financial contract."""

    UNINITIALIZED = 0
    PRE_DISPUTE = 1
    PENDING_DISPUTE = 2
    DISPUTE_SUCCEEDED = 3
    DISPUTE_FAILED = 4


TERMINAL_STATES = frozenset(
    {LiquidationState.DISPUTE_SUCCEEDED, LiquidationState.DISPUTE_FAILED}
)


@dataclass(frozen=True)
class LiquidationRecord:
    """A liquidation against one sponsor, identified by (sponsor, liquidation_id)."""

    sponsor: str
    liquidation_id: int
    liquidator: str
    locked_collateral: Decimal
    tokens_outstanding: Decimal
    liquidation_time: int
    state: LiquidationState
    liquidated_price: Decimal
    disputer: str | None = None
    final_fee: Decimal = Decimal(0)

    @property
    def key(self) -> tuple[str, int]:
        return (self.sponsor, self.liquidation_id)


class ActionKind(str, Enum):
    LIQUIDATE = "liquidate"
    DISPUTE = "dispute"
    SETTLE = "settle"


@dataclass(frozen=True)
class ActionDecision:
    """One action the keeper intends to take this cycle. Never persisted."""

    kind: ActionKind
    sponsor: str
    liquidation_id: int | None = None
    computed_price: Decimal | None = None
    amount: Decimal | None = None

    @property
    def target(self) -> tuple[str, int | None]:
        return (self.sponsor, self.liquidation_id)


@dataclass(frozen=True)
class Allowance:
    spender: str
    token: str
    current_amount: int


@dataclass(frozen=True)
class LedgerCall:
    """A single encodable contract call.

    ``signature`` is the canonical function signature, e.g.
    ``"dispute(uint256,address)"``; ``output_types`` are the ABI types used to
    decode the return data.
    """

    to: str
    signature: str
    args: tuple[Any, ...] = ()
    output_types: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.signature.split("(", 1)[0]

    @property
    def arg_types(self) -> tuple[str, ...]:
        inner = self.signature[self.signature.index("(") + 1 : -1]
        return tuple(_split_types(inner)) if inner else ()


def _split_types(inner: str) -> list[str]:
    """Split a comma-separated ABI type list, respecting tuple parentheses."""
    types: list[str] = []
    depth = 0
    current = ""
    for ch in inner:
        if ch == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        current += ch
    types.append(current)
    return types


@dataclass(frozen=True)
class ContractEvent:
    name: str
    block_number: int
    transaction_hash: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransactionResult:
    """Outcome of an included transaction."""

    transaction_hash: str
    events: tuple[dict[str, Any], ...] = ()
    return_value: Any = None
