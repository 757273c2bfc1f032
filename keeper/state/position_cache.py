"""Snapshot cache of sponsor positions and liquidations for one contract."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from web3 import Web3

from ..contracts.financial_contract import FinancialContract
from ..engine.decisions import is_owed, is_undercollateralized
from ..models import LiquidationRecord, LiquidationState, Position
from .events import EventCursor, SponsorEventSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """Consistent view of the contract taken by a single refresh."""

    version: int
    taken_at: int
    positions: tuple[Position, ...] = ()
    liquidations: tuple[LiquidationRecord, ...] = ()
    sponsors: frozenset[str] = field(default_factory=frozenset)

    def underwater(
        self,
        price: Decimal,
        collateral_requirement: Decimal,
        cr_threshold: Decimal = Decimal(0),
    ) -> list[Position]:
        return [
            position
            for position in self.positions
            if is_undercollateralized(position, price, collateral_requirement, cr_threshold)
        ]

    def undisputed(self) -> list[LiquidationRecord]:
        return [
            liquidation
            for liquidation in self.liquidations
            if liquidation.state == LiquidationState.PRE_DISPUTE
        ]

    def settleable_by(
        self, account: str, now: int, liquidation_liveness: int
    ) -> list[LiquidationRecord]:
        return [
            liquidation
            for liquidation in self.liquidations
            if is_owed(liquidation, account, now, liquidation_liveness)
        ]


class PositionStateCache:
    """Holds the latest Snapshot and rebuilds it on ``refresh``.

    Sponsors come from a fixed list when one is configured, otherwise they are
    discovered from NewSponsor events and accumulated across refreshes. Readers
    always see a whole snapshot; a refresh that fails leaves the previous one.
    """

    def __init__(
        self,
        contract: FinancialContract,
        event_source: SponsorEventSource | None = None,
        sponsors: Iterable[str] = (),
    ) -> None:
        self._contract = contract
        self._event_source = event_source
        self._fixed_sponsors = tuple(Web3.to_checksum_address(s) for s in sponsors)
        self._known_sponsors: set[str] = set(self._fixed_sponsors)
        self._cursor: EventCursor | None = (
            event_source.initial_cursor() if event_source is not None else None
        )
        self._snapshot = Snapshot(version=0, taken_at=0)

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def cursor(self) -> EventCursor | None:
        return self._cursor

    async def _discover_sponsors(self, latest_block: int) -> None:
        if self._fixed_sponsors or self._event_source is None or self._cursor is None:
            return
        events, cursor = await self._event_source.get_events_since(self._cursor, latest_block)
        for event in events:
            sponsor = event.args["sponsor"]
            if sponsor not in self._known_sponsors:
                logger.info("Discovered sponsor %s at block %d", sponsor, event.block_number)
                self._known_sponsors.add(sponsor)
        self._cursor = cursor

    async def refresh(self, now: int, latest_block: int) -> Snapshot:
        """Read every known sponsor's position and liquidations into a new snapshot."""
        previous_cursor = self._cursor
        try:
            await self._discover_sponsors(latest_block)
            sponsors = sorted(self._known_sponsors)
            positions, liquidations = await asyncio.gather(
                asyncio.gather(*(self._contract.get_position(s) for s in sponsors)),
                asyncio.gather(*(self._contract.get_liquidations(s) for s in sponsors)),
            )
        except BaseException:
            self._cursor = previous_cursor
            raise

        snapshot = Snapshot(
            version=self._snapshot.version + 1,
            taken_at=now,
            positions=tuple(p for p in positions if p is not None),
            liquidations=tuple(record for records in liquidations for record in records),
            sponsors=frozenset(sponsors),
        )
        self._snapshot = snapshot
        logger.info(
            "Snapshot v%d: %d sponsors, %d open positions, %d liquidations",
            snapshot.version,
            len(sponsors),
            len(snapshot.positions),
            len(snapshot.liquidations),
        )
        return snapshot
