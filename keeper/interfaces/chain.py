"""Ledger client protocol — EVM JSON-RPC abstraction."""
from typing import Any, Protocol

from ..models import Block, LedgerCall, TransactionResult


class LedgerClient(Protocol):
    """Read contract state, submit transactions and fetch blocks."""

    async def call(self, call: LedgerCall, sender: str | None = None) -> Any: ...

    async def send(
        self, call: LedgerCall, account: str, gas_price: int
    ) -> TransactionResult: ...

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None: ...

    async def get_block(self, number: int | str = "latest") -> Block: ...

    async def get_logs(
        self,
        address: str,
        topics: list[str | None],
        from_block: int,
        to_block: int | str = "latest",
    ) -> list[dict[str, Any]]: ...

    async def gas_price(self) -> int: ...
