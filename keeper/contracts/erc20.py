"""Minimal ERC20 binding."""
from __future__ import annotations

from web3 import Web3

from ..interfaces.chain import LedgerClient
from ..models import LedgerCall


class Erc20Token:
    def __init__(self, ledger: LedgerClient, address: str) -> None:
        self._ledger = ledger
        self.address = Web3.to_checksum_address(address)

    async def decimals(self) -> int:
        call = LedgerCall(self.address, "decimals()", output_types=("uint8",))
        return int(await self._ledger.call(call))

    async def balance_of(self, owner: str) -> int:
        call = LedgerCall(self.address, "balanceOf(address)", (owner,), ("uint256",))
        return int(await self._ledger.call(call))

    async def allowance(self, owner: str, spender: str) -> int:
        call = LedgerCall(
            self.address, "allowance(address,address)", (owner, spender), ("uint256",)
        )
        return int(await self._ledger.call(call))

    def approve_call(self, spender: str, amount: int) -> LedgerCall:
        return LedgerCall(
            self.address, "approve(address,uint256)", (spender, amount), ("bool",)
        )
