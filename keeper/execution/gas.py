"""Gas price estimation with a refresh interval."""
from __future__ import annotations

import logging
import time
from decimal import ROUND_UP, Decimal
from typing import Callable

from ..config import GasConfig
from ..interfaces.chain import LedgerClient

logger = logging.getLogger(__name__)


class GasEstimator:
    """Caches the node's gas price, scaled by ``multiplier``.

    ``update()`` is cheap to call every cycle; it only hits the node once
    ``update_interval`` seconds have passed since the last successful fetch.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        config: GasConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config or GasConfig()
        self._ledger = ledger
        self._update_interval = config.update_interval
        self._multiplier = config.multiplier
        self._clock = clock
        self._last_update: float | None = None
        self._fast_price: int | None = None

    async def update(self) -> None:
        now = self._clock()
        if self._last_update is not None and now - self._last_update < self._update_interval:
            return
        raw = await self._ledger.gas_price()
        self._fast_price = int(
            (Decimal(raw) * self._multiplier).to_integral_value(rounding=ROUND_UP)
        )
        self._last_update = now
        logger.debug("Gas price updated: %d wei (node %d)", self._fast_price, raw)

    async def get_current_fast_price(self) -> int:
        if self._fast_price is None:
            await self.update()
        assert self._fast_price is not None
        return self._fast_price
