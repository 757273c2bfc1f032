"""Financial contract binding — position/liquidation reads and mutation calls."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from typing import Any

from web3 import Web3

from ..interfaces.chain import LedgerClient
from ..models import (
    ContractEvent,
    LedgerCall,
    LiquidationRecord,
    LiquidationState,
    Position,
    WithdrawalRequest,
)
from .abi import FIXED_POINT_DECIMALS, event_topic, to_decimal, to_raw, topic_to_address
from .erc20 import Erc20Token

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

NEW_SPONSOR_EVENT = "NewSponsor(address)"

_LIQUIDATION_TUPLE = (
    "(address,address,uint8,uint256,uint256,uint256,uint256,uint256,address,uint256,uint256)[]"
)


@dataclass(frozen=True)
class ContractProps:
    """Contract values that never change and are read once at startup."""

    collateral_requirement: Decimal
    collateral_token: str
    synthetic_token: str
    collateral_decimals: int
    synthetic_decimals: int
    liquidation_liveness: int
    dispute_bond_percentage: Decimal
    min_sponsor_tokens: Decimal


class FinancialContract:
    """Read and build calls for an ExpiringMultiParty or Perpetual contract."""

    def __init__(
        self,
        ledger: LedgerClient,
        address: str,
        contract_type: str = "ExpiringMultiParty",
    ) -> None:
        self._ledger = ledger
        self.address = Web3.to_checksum_address(address)
        self.contract_type = contract_type
        self._props: ContractProps | None = None

    def _call(self, signature: str, *args: Any, outputs: tuple[str, ...] = ()) -> LedgerCall:
        return LedgerCall(to=self.address, signature=signature, args=args, output_types=outputs)

    @property
    def props(self) -> ContractProps:
        if self._props is None:
            raise RuntimeError("FinancialContract.load_props() has not been awaited")
        return self._props

    async def load_props(self) -> ContractProps:
        """Read the immutable contract parameters and token decimals."""
        (
            collateral_requirement,
            collateral_address,
            synthetic_address,
            liveness,
            bond_percentage,
            min_sponsor_tokens,
        ) = await asyncio.gather(
            self._ledger.call(self._call("collateralRequirement()", outputs=("uint256",))),
            self._ledger.call(self._call("collateralCurrency()", outputs=("address",))),
            self._ledger.call(self._call("tokenCurrency()", outputs=("address",))),
            self._ledger.call(self._call("liquidationLiveness()", outputs=("uint256",))),
            self._ledger.call(self._call("disputeBondPercentage()", outputs=("uint256",))),
            self._ledger.call(self._call("minSponsorTokens()", outputs=("uint256",))),
        )
        collateral_decimals, synthetic_decimals = await asyncio.gather(
            Erc20Token(self._ledger, collateral_address).decimals(),
            Erc20Token(self._ledger, synthetic_address).decimals(),
        )

        self._props = ContractProps(
            collateral_requirement=to_decimal(collateral_requirement, FIXED_POINT_DECIMALS),
            collateral_token=Web3.to_checksum_address(collateral_address),
            synthetic_token=Web3.to_checksum_address(synthetic_address),
            collateral_decimals=collateral_decimals,
            synthetic_decimals=synthetic_decimals,
            liquidation_liveness=int(liveness),
            dispute_bond_percentage=to_decimal(bond_percentage, FIXED_POINT_DECIMALS),
            min_sponsor_tokens=to_decimal(min_sponsor_tokens, synthetic_decimals),
        )
        logger.debug("Loaded contract props for %s: %s", self.address, self._props)
        return self._props

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_current_time(self) -> int:
        return int(await self._ledger.call(self._call("getCurrentTime()", outputs=("uint256",))))

    async def expiration_or_shutdown_timestamp(self) -> int:
        if self.contract_type == "ExpiringMultiParty":
            signature = "expirationTimestamp()"
        else:
            signature = "emergencyShutdownTimestamp()"
        return int(await self._ledger.call(self._call(signature, outputs=("uint256",))))

    async def is_expired_or_shutdown(self) -> bool:
        expiry, current = await asyncio.gather(
            self.expiration_or_shutdown_timestamp(), self.get_current_time()
        )
        return 0 < expiry <= current

    async def get_position(self, sponsor: str) -> Position | None:
        """Return the sponsor's position, or ``None`` if it is closed."""
        props = self.props
        raw_position, raw_collateral = await asyncio.gather(
            self._ledger.call(
                self._call(
                    "positions(address)",
                    sponsor,
                    outputs=("uint256", "uint256", "uint256", "uint256", "uint256"),
                )
            ),
            self._ledger.call(
                self._call("getCollateral(address)", sponsor, outputs=("uint256",))
            ),
        )
        tokens_outstanding, withdrawal_pass_time, withdrawal_amount, _, _ = raw_position
        if tokens_outstanding == 0:
            return None

        request = None
        if withdrawal_pass_time > 0:
            request = WithdrawalRequest(
                amount=to_decimal(withdrawal_amount, props.collateral_decimals),
                expiry=int(withdrawal_pass_time),
            )
        return Position(
            sponsor=Web3.to_checksum_address(sponsor),
            collateral=to_decimal(raw_collateral, props.collateral_decimals),
            debt=to_decimal(tokens_outstanding, props.synthetic_decimals),
            withdrawal_request=request,
        )

    async def get_liquidations(self, sponsor: str) -> list[LiquidationRecord]:
        """Return every initialised liquidation recorded against ``sponsor``."""
        props = self.props
        raw = await self._ledger.call(
            self._call("getLiquidations(address)", sponsor, outputs=(_LIQUIDATION_TUPLE,))
        )
        records: list[LiquidationRecord] = []
        for liquidation_id, item in enumerate(raw):
            (
                _sponsor,
                liquidator,
                state,
                liquidation_time,
                tokens_outstanding,
                locked_collateral,
                liquidated_collateral,
                _raw_unit_collateral,
                disputer,
                _settlement_price,
                final_fee,
            ) = item
            if state == LiquidationState.UNINITIALIZED:
                continue
            tokens = to_decimal(tokens_outstanding, props.synthetic_decimals)
            liquidated = to_decimal(liquidated_collateral, props.collateral_decimals)
            records.append(
                LiquidationRecord(
                    sponsor=Web3.to_checksum_address(sponsor),
                    liquidation_id=liquidation_id,
                    liquidator=Web3.to_checksum_address(liquidator),
                    locked_collateral=to_decimal(locked_collateral, props.collateral_decimals),
                    tokens_outstanding=tokens,
                    liquidation_time=int(liquidation_time),
                    state=LiquidationState(state),
                    liquidated_price=self.implied_price(liquidated, tokens),
                    disputer=None if disputer == ZERO_ADDRESS else Web3.to_checksum_address(disputer),
                    final_fee=to_decimal(final_fee, props.collateral_decimals),
                )
            )
        return records

    def implied_price(self, collateral: Decimal, tokens: Decimal) -> Decimal:
        """Price at which ``collateral`` exactly meets the requirement for ``tokens``."""
        if tokens == 0:
            return Decimal(0)
        return collateral / (tokens * self.props.collateral_requirement)

    async def get_new_sponsor_events(
        self, from_block: int, to_block: int | str = "latest"
    ) -> list[ContractEvent]:
        logs = await self._ledger.get_logs(
            self.address, [event_topic(NEW_SPONSOR_EVENT)], from_block, to_block
        )
        return [
            ContractEvent(
                name="NewSponsor",
                block_number=int(log["blockNumber"], 16),
                transaction_hash=log.get("transactionHash", ""),
                args={"sponsor": topic_to_address(log["topics"][1])},
            )
            for log in logs
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_liquidation_call(
        self,
        sponsor: str,
        max_collateral_per_token: Decimal,
        max_tokens: Decimal,
        deadline: int,
    ) -> LedgerCall:
        props = self.props
        max_cpt = int(
            max_collateral_per_token.scaleb(FIXED_POINT_DECIMALS).to_integral_value(rounding=ROUND_UP)
        )
        return self._call(
            "createLiquidation(address,(uint256),(uint256),(uint256),uint256)",
            sponsor,
            (0,),
            (max_cpt,),
            (to_raw(max_tokens, props.synthetic_decimals),),
            deadline,
            outputs=("uint256", "uint256", "uint256"),
        )

    def dispute_call(self, liquidation_id: int, sponsor: str) -> LedgerCall:
        return self._call(
            "dispute(uint256,address)", liquidation_id, sponsor, outputs=("uint256",)
        )

    def withdraw_liquidation_call(self, liquidation_id: int, sponsor: str) -> LedgerCall:
        return self._call("withdrawLiquidation(uint256,address)", liquidation_id, sponsor)

    def dispute_bond(self, liquidation: LiquidationRecord) -> Decimal:
        """Collateral a disputer must post to dispute ``liquidation``."""
        return (
            liquidation.locked_collateral * self.props.dispute_bond_percentage
            + liquidation.final_fee
        )
