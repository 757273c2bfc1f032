"""Reference price source protocol."""
from decimal import Decimal
from typing import Protocol

from ..models import PriceSample


class PriceSource(Protocol):
    """Abstract interface for a reference price feed."""

    async def update(self) -> None: ...

    def latest(self) -> PriceSample | None: ...

    async def get_historical_price(self, timestamp: int) -> Decimal: ...
