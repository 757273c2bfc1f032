"""Pyth Network reference price source (Hermes HTTP API)."""
import asyncio
import logging
import ssl
import time
from decimal import Decimal
from typing import Any

import aiohttp
import certifi

from ..config import PythConfig
from ..errors import PriceUnavailableError
from ..models import PriceSample
from ..temporal.prices import PriceHistory

logger = logging.getLogger(__name__)


def _normalize_feed_id(feed_id: str) -> str:
    return feed_id.lower().removeprefix("0x")


class PythPriceSource:
    """Fetch one feed's prices from Pyth Network.

    Every price seen is kept in a ``PriceHistory`` keyed by publish time, so a
    historical lookup for a timestamp is only requested from Hermes once.
    """

    def __init__(self, config: PythConfig, history: PriceHistory | None = None) -> None:
        self.hermes_url = config.hermes_url.rstrip("/")
        self.feed_id = _normalize_feed_id(config.feed_id)
        self.history = history if history is not None else PriceHistory()
        self._last_update: int | None = None

    async def _fetch(self, path: str) -> dict[str, Any] | None:
        url = f"{self.hermes_url}/v2/updates/price/{path}?ids[]={self.feed_id}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.get(url) as response:
                if response.status != 200:
                    logger.error("Error fetching prices from Pyth: HTTP %s", response.status)
                    return None
                data = await response.json()

        for item in data.get("parsed", []):
            if _normalize_feed_id(item.get("id", "")) == self.feed_id:
                return item.get("price", {})
        return None

    @staticmethod
    def _parse(price_data: dict[str, Any]) -> PriceSample:
        price_raw = int(price_data.get("price", 0))
        expo = int(price_data.get("expo", 0))
        return PriceSample(
            timestamp=int(price_data.get("publish_time", 0)),
            price=Decimal(price_raw).scaleb(expo),
        )

    async def update(self) -> None:
        """Fetch the latest price into the history. Failures are logged, not raised."""
        try:
            price_data = await self._fetch("latest")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Error fetching prices from Pyth: %s", e)
            return
        if price_data is None:
            logger.warning("Pyth returned no price for feed %s", self.feed_id)
            return

        sample = self._parse(price_data)
        self.history.record_price(sample.timestamp, sample.price)
        self._last_update = int(time.time())
        logger.info("Fetched price from Pyth Network: %s at %d", sample.price, sample.timestamp)

    def latest(self) -> PriceSample | None:
        return self.history.latest()

    @property
    def last_update(self) -> int | None:
        return self._last_update

    async def get_historical_price(self, timestamp: int) -> Decimal:
        """Price published at ``timestamp``.

        Raises:
            PriceUnavailableError: Hermes has no price for that time or cannot be reached.
        """
        cached = self.history.price_at(timestamp)
        if cached is not None:
            return cached

        try:
            price_data = await self._fetch(str(timestamp))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PriceUnavailableError(f"Pyth request for {timestamp} failed: {e}") from e
        if price_data is None:
            raise PriceUnavailableError(f"No Pyth price for feed {self.feed_id} at {timestamp}")

        sample = self._parse(price_data)
        return self.history.record_price(timestamp, sample.price)
