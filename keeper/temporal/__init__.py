"""Temporal index: block/timestamp lookups and historical prices."""
from .blocks import BlockIndex
from .prices import PriceHistory, time_weighted_average

__all__ = ["BlockIndex", "PriceHistory", "time_weighted_average"]
