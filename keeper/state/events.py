"""Replay-from-cursor event queries."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..contracts.financial_contract import FinancialContract
from ..models import ContractEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventCursor:
    """Last block whose events have been processed (inclusive)."""

    last_processed_block: int


class SponsorEventSource:
    """Discover sponsors from NewSponsor events, one block range at a time.

    The cursor is held by the caller. ``ending_block`` caps the range and
    ``starting_block`` is where the first query begins.
    """

    def __init__(
        self,
        contract: FinancialContract,
        starting_block: int = 0,
        ending_block: int | None = None,
    ) -> None:
        self._contract = contract
        self.starting_block = starting_block
        self.ending_block = ending_block

    def initial_cursor(self) -> EventCursor:
        return EventCursor(last_processed_block=self.starting_block - 1)

    async def get_events_since(
        self, cursor: EventCursor, latest_block: int
    ) -> tuple[list[ContractEvent], EventCursor]:
        """Events in ``(cursor, min(latest_block, ending_block)]`` and the advanced cursor."""
        to_block = latest_block
        if self.ending_block is not None:
            to_block = min(to_block, self.ending_block)
        from_block = cursor.last_processed_block + 1
        if from_block > to_block:
            return [], cursor

        events = await self._contract.get_new_sponsor_events(from_block, to_block)
        logger.debug(
            "Fetched %d NewSponsor events in blocks [%d, %d]",
            len(events),
            from_block,
            to_block,
        )
        return events, EventCursor(last_processed_block=to_block)
