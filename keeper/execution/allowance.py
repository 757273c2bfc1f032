"""ERC20 approvals with a low-water mark and a local allowance cache."""
from __future__ import annotations

import logging

from web3 import Web3

from ..config import MAX_UINT
from ..contracts.erc20 import Erc20Token
from ..interfaces.chain import LedgerClient
from ..models import Allowance, LedgerCall, TransactionResult
from .gas import GasEstimator

logger = logging.getLogger(__name__)

# Re-approve only once the allowance has been spent down past half of MAX_UINT.
LOW_WATER_MARK = MAX_UINT // 2


class AllowanceManager:
    """Keeps ``owner``'s allowances topped up to MAX_UINT.

    Allowances read from the ledger are cached per ``(owner, spender, token)`` and
    decremented locally via ``record_spend`` so the ledger is only re-read once a
    cached value drops below the low-water mark.
    """

    def __init__(
        self, ledger: LedgerClient, account: str, gas_estimator: GasEstimator
    ) -> None:
        self._ledger = ledger
        self._account = Web3.to_checksum_address(account)
        self._gas = gas_estimator
        self._cache: dict[tuple[str, str, str], Allowance] = {}

    def cached(self, spender: str, token: str, owner: str | None = None) -> Allowance | None:
        return self._cache.get(self._key(owner or self._account, spender, token))

    @staticmethod
    def _key(owner: str, spender: str, token: str) -> tuple[str, str, str]:
        return (
            Web3.to_checksum_address(owner),
            Web3.to_checksum_address(spender),
            Web3.to_checksum_address(token),
        )

    async def _current(self, owner: str, spender: str, token: str) -> Allowance:
        key = self._key(owner, spender, token)
        cached = self._cache.get(key)
        if cached is not None and cached.current_amount >= LOW_WATER_MARK:
            return cached
        amount = await Erc20Token(self._ledger, token).allowance(key[0], key[1])
        allowance = Allowance(spender=key[1], token=key[2], current_amount=amount)
        self._cache[key] = allowance
        return allowance

    async def approval_call_if_needed(
        self, owner: str, spender: str, token: str
    ) -> LedgerCall | None:
        """Approve call for ``owner`` (e.g. a proxy) to include in a bundle, or None.

        The cache is left untouched until ``record_approval`` confirms the bundle
        landed, so a bundle that fails carries the approval again next time.
        """
        allowance = await self._current(owner, spender, token)
        if allowance.current_amount >= LOW_WATER_MARK:
            return None
        return Erc20Token(self._ledger, token).approve_call(allowance.spender, MAX_UINT)

    def record_approval(self, spender: str, token: str, owner: str | None = None) -> None:
        """Mark ``spender`` as approved for MAX_UINT of ``token`` after an approval landed."""
        key = self._key(owner or self._account, spender, token)
        self._cache[key] = Allowance(spender=key[1], token=key[2], current_amount=MAX_UINT)

    async def ensure(self, spender: str, token: str) -> TransactionResult | None:
        """Approve ``spender`` for MAX_UINT of ``token`` if below the low-water mark."""
        allowance = await self._current(self._account, spender, token)
        if allowance.current_amount >= LOW_WATER_MARK:
            logger.debug(
                "Allowance for %s on %s is sufficient (%d)",
                spender,
                token,
                allowance.current_amount,
            )
            return None

        logger.info("Approving %s to spend %s from %s", spender, token, self._account)
        call = Erc20Token(self._ledger, token).approve_call(allowance.spender, MAX_UINT)
        receipt = await self._ledger.send(
            call, self._account, await self._gas.get_current_fast_price()
        )
        self.record_approval(spender, token)
        logger.info("Approved %s on %s in %s", spender, token, receipt.transaction_hash)
        return receipt

    def record_spend(self, spender: str, token: str, amount: int, owner: str | None = None) -> None:
        key = self._key(owner or self._account, spender, token)
        cached = self._cache.get(key)
        if cached is None:
            return
        self._cache[key] = Allowance(
            spender=cached.spender,
            token=cached.token,
            current_amount=max(cached.current_amount - amount, 0),
        )
