"""Reference price lookups: current (optionally time-weighted) and historical."""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Iterable

from ..errors import PriceUnavailableError
from ..interfaces.price_source import PriceSource
from ..temporal.blocks import BlockIndex
from ..temporal.prices import time_weighted_average

logger = logging.getLogger(__name__)


class ReferencePrice:
    """Wraps a price source with the block index.

    With ``twap_lookback > 0`` the current price is the time-weighted average of
    the source's prices at every block of the lookback window; otherwise it is the
    source's latest sample, ignored once it is older than ``max_price_age``.
    """

    def __init__(
        self,
        source: PriceSource,
        block_index: BlockIndex,
        twap_lookback: int = 0,
        max_price_age: int | None = None,
    ) -> None:
        if twap_lookback < 0:
            raise ValueError("twap_lookback must be >= 0")
        self._source = source
        self._blocks = block_index
        self._twap_lookback = twap_lookback
        self._max_price_age = max_price_age

    async def update(self) -> None:
        await self._source.update()

    async def historical(self, timestamps: Iterable[int]) -> dict[int, Decimal | None]:
        """Prices at each timestamp, fetched concurrently; ``None`` where unavailable."""
        unique = sorted(set(timestamps))
        results = await asyncio.gather(
            *(self._source.get_historical_price(ts) for ts in unique),
            return_exceptions=True,
        )
        prices: dict[int, Decimal | None] = {}
        for timestamp, result in zip(unique, results):
            if isinstance(result, PriceUnavailableError):
                logger.warning("No reference price at %d: %s", timestamp, result)
                prices[timestamp] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                prices[timestamp] = result
        return prices

    async def current(self, now: int) -> Decimal | None:
        if self._twap_lookback == 0:
            sample = self._source.latest()
            if sample is None:
                return None
            age = now - sample.timestamp
            if self._max_price_age is not None and age > self._max_price_age:
                logger.warning(
                    "Latest price %s is %ds old (limit %ds), treating as unavailable",
                    sample.price,
                    age,
                    self._max_price_age,
                )
                return None
            return sample.price

        start = now - self._twap_lookback
        blocks = await self._blocks.refresh_window(self._twap_lookback, now)
        timestamps = sorted({block.timestamp for block in blocks if block.timestamp <= now})
        prices = await self.historical(timestamps)
        average = time_weighted_average(
            [(timestamp, prices[timestamp]) for timestamp in timestamps], start, now
        )
        logger.debug(
            "TWAP over [%d, %d] from %d blocks: %s", start, now, len(timestamps), average
        )
        return average
