"""Block cache that maps timestamps to block numbers.

Blocks are kept in a list ordered by number (and therefore by timestamp, which
the ledger guarantees is non-decreasing). Entries are never updated or
removed, so a block that has been fetched once is never requested again.
"""
from __future__ import annotations

import asyncio
import logging
import math
from bisect import bisect_left, bisect_right
from typing import Awaitable, Callable, Iterable

from ..errors import OutOfRangeError
from ..models import Block

logger = logging.getLogger(__name__)

GetBlock = Callable[[int | str], Awaitable[Block]]

# Over-estimates block distances so a window or backward search is not under-covered.
BLOCK_CUSHION = 1.1


def _by_number(block: Block) -> int:
    return block.number


def _by_timestamp(block: Block) -> int:
    return block.timestamp


class BlockIndex:
    """Timestamp → block lookups backed by an additive block cache.

    Args:
        get_block: async callable returning a block for a number or ``"latest"``.
        average_block_time: seconds per block, used to estimate block distances.
        blocks: optional prefilled cache.
    """

    def __init__(
        self,
        get_block: GetBlock,
        average_block_time: float,
        blocks: Iterable[Block] = (),
    ) -> None:
        if average_block_time <= 0:
            raise ValueError("average_block_time must be > 0")
        self._get_block = get_block
        self._average_block_time = average_block_time
        self._blocks: list[Block] = []
        for block in blocks:
            self.insert(block)

    # ------------------------------------------------------------------
    # Cache primitives
    # ------------------------------------------------------------------

    def blocks(self) -> list[Block]:
        return list(self._blocks)

    def latest(self) -> Block | None:
        return self._blocks[-1] if self._blocks else None

    def has(self, number: int) -> bool:
        index = bisect_left(self._blocks, number, key=_by_number)
        return index < len(self._blocks) and self._blocks[index].number == number

    def insert(self, block: Block) -> Block:
        """Insert a block, keeping the cache sorted. Existing entries win."""
        index = bisect_left(self._blocks, block.number, key=_by_number)
        if index < len(self._blocks) and self._blocks[index].number == block.number:
            return self._blocks[index]

        if index > 0:
            previous = self._blocks[index - 1]
            assert previous.timestamp <= block.timestamp, (
                f"block {block.number} timestamp {block.timestamp} precedes "
                f"block {previous.number} timestamp {previous.timestamp}"
            )
        if index < len(self._blocks):
            following = self._blocks[index]
            assert block.timestamp <= following.timestamp, (
                f"block {block.number} timestamp {block.timestamp} follows "
                f"block {following.number} timestamp {following.timestamp}"
            )

        self._blocks.insert(index, block)
        return block

    async def _fetch(self, number: int) -> Block:
        index = bisect_left(self._blocks, number, key=_by_number)
        if index < len(self._blocks) and self._blocks[index].number == number:
            return self._blocks[index]
        block = await self._get_block(number)
        assert block.number == number, f"requested block {number}, got {block.number}"
        return self.insert(block)

    async def _fetch_latest(self) -> Block:
        block = await self._get_block("latest")
        return self.insert(block)

    def _estimate_blocks(self, seconds: float) -> int:
        return math.ceil(seconds * BLOCK_CUSHION / self._average_block_time)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def block_at(self, timestamp: int) -> Block:
        """Return the latest block whose timestamp is <= ``timestamp``."""
        if not self._blocks or self._blocks[-1].timestamp < timestamp:
            latest = await self._fetch_latest()
            if timestamp >= latest.timestamp:
                return latest

        if self._blocks[0].timestamp > timestamp:
            await self._search_backward(timestamp)

        # First cached block strictly after the timestamp closes the bracket.
        index = bisect_right(self._blocks, timestamp, key=_by_timestamp)
        if index == len(self._blocks):
            return self._blocks[-1]
        return await self._interpolate(self._blocks[index - 1], self._blocks[index], timestamp)

    async def _search_backward(self, timestamp: int) -> None:
        first = self._blocks[0]
        distance = max(self._estimate_blocks(first.timestamp - timestamp), 1)
        while True:
            number = max(0, first.number - distance)
            block = await self._fetch(number)
            if block.timestamp <= timestamp:
                return
            if number == 0:
                raise OutOfRangeError(
                    f"timestamp {timestamp} is before block 0 ({block.timestamp})"
                )
            distance *= 2

    async def _interpolate(self, start: Block, end: Block, timestamp: int) -> Block:
        """Interpolation search inside ``start.timestamp <= timestamp < end.timestamp``."""
        while True:
            assert start.number < end.number, "bracket inverted"
            assert start.timestamp <= timestamp < end.timestamp, (
                f"timestamp {timestamp} outside bracket "
                f"[{start.timestamp}, {end.timestamp})"
            )
            if end.number == start.number + 1:
                return start

            fraction = (timestamp - start.timestamp) / (end.timestamp - start.timestamp)
            estimate = start.number + round(fraction * (end.number - start.number))
            # Clamp strictly inside the bracket so it shrinks every iteration.
            estimate = min(max(estimate, start.number + 1), end.number - 1)

            block = await self._fetch(estimate)
            if block.timestamp <= timestamp:
                start = block
            else:
                end = block

    async def refresh_window(
        self, lookback: int, now: int, buffer: float = BLOCK_CUSHION
    ) -> list[Block]:
        """Fetch every block of the last ``lookback`` seconds into the cache.

        Returns the full fetched range; only blocks inside ``[now - lookback, now]``
        are inserted.
        """
        if lookback < 0:
            raise ValueError("lookback must be >= 0")
        if buffer <= 1.0:
            raise ValueError("buffer must be > 1.0")

        latest = await self._get_block("latest")
        earliest = max(
            0, latest.number - math.floor(buffer * lookback / self._average_block_time)
        )

        fetched = await asyncio.gather(
            *(self._get_block(number) for number in range(earliest, latest.number)),
        )
        fetched = [*fetched, latest]

        window_start = now - lookback
        for block in fetched:
            if window_start <= block.timestamp <= now:
                self.insert(block)

        logger.debug(
            "Block window refreshed: %d blocks fetched [%d, %d], %d cached",
            len(fetched),
            earliest,
            latest.number,
            len(self._blocks),
        )
        return fetched
