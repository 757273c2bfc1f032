"""Point-in-time price cache and time-weighted averaging."""
from __future__ import annotations

import sys
from decimal import Decimal
from typing import Iterable, Sequence

from ..models import PriceSample

# Sentinel timestamp that closes the validity window of the last real sample.
FAR_FUTURE = sys.maxsize


class PriceHistory:
    """Reference prices keyed by timestamp. Samples are immutable once written."""

    def __init__(self, samples: Iterable[PriceSample] = ()) -> None:
        self._prices: dict[int, Decimal] = {}
        for sample in samples:
            self.record_price(sample.timestamp, sample.price)

    def __len__(self) -> int:
        return len(self._prices)

    def has(self, timestamp: int) -> bool:
        return timestamp in self._prices

    def price_at(self, timestamp: int) -> Decimal | None:
        return self._prices.get(timestamp)

    def record_price(self, timestamp: int, price: Decimal) -> Decimal:
        """Store ``price`` unless a sample already exists; return the stored price."""
        if timestamp < 0:
            raise ValueError("timestamp must be >= 0")
        return self._prices.setdefault(timestamp, price)

    def between(self, start: int, end: int) -> list[PriceSample]:
        if start > end:
            raise ValueError("start must not exceed end")
        return [
            PriceSample(ts, price)
            for ts, price in sorted(self._prices.items())
            if start <= ts <= end
        ]

    def latest(self) -> PriceSample | None:
        if not self._prices:
            return None
        timestamp = max(self._prices)
        return PriceSample(timestamp, self._prices[timestamp])

    def samples(self) -> list[PriceSample]:
        return [PriceSample(ts, price) for ts, price in sorted(self._prices.items())]


def time_weighted_average(
    events: Sequence[tuple[int, Decimal | None]],
    start: int,
    end: int,
    carry_in_sum: Decimal = Decimal(0),
) -> Decimal | None:
    """Average of ``events`` over ``[start, end]`` weighted by time in effect.

    ``events`` are chronologically sorted ``(timestamp, price)`` pairs; each
    price holds until the next event. ``carry_in_sum`` seeds the weighted sum
    (price × seconds) accumulated outside this call. Returns ``None`` when no
    sample overlaps the window.
    """
    price_sum = carry_in_sum
    time_sum = 0
    last_time: int | None = None
    last_price: Decimal | None = None

    for timestamp, price in [*events, (FAR_FUTURE, None)]:
        if last_time is not None and last_price is not None:
            window = max(min(timestamp, end) - max(last_time, start), 0)
            price_sum += last_price * window
            time_sum += window

        if timestamp > end:
            break

        last_time, last_price = timestamp, price

    if time_sum == 0:
        return None
    return price_sum / time_sum
