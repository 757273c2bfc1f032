"""Unit tests for the Pyth price source — response parsing, caching and errors."""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from keeper.config import PythConfig
from keeper.errors import PriceUnavailableError
from keeper.oracles.pyth import PythPriceSource

FEED = "aa" * 32


@pytest.fixture()
def source() -> PythPriceSource:
    return PythPriceSource(
        PythConfig(hermes_url="https://hermes.example.com/", feed_id="0x" + FEED.upper())
    )


def _make_pyth_response(price: str = "105000000", expo: int = -8, publish_time: int = 1_700) -> dict:
    return {
        "parsed": [
            {"id": "bb" * 32, "price": {"price": "1", "expo": 0, "publish_time": 1}},
            {
                "id": FEED,
                "price": {"price": price, "expo": expo, "publish_time": publish_time},
            },
        ]
    }


def _mock_session(status: int = 200, data: dict | None = None) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=data or {})
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.get = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


class TestUpdate:
    @pytest.mark.asyncio
    async def test_parses_matching_feed(self, source: PythPriceSource) -> None:
        mock_session = _mock_session(data=_make_pyth_response())

        with patch("keeper.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("keeper.oracles.pyth.aiohttp.TCPConnector"):
                await source.update()

        sample = source.latest()
        assert sample is not None
        assert sample.price == Decimal("1.05")
        assert sample.timestamp == 1_700
        assert source.last_update is not None
        url = mock_session.get.call_args[0][0]
        assert url == f"https://hermes.example.com/v2/updates/price/latest?ids[]={FEED}"

    @pytest.mark.asyncio
    async def test_http_error_keeps_previous_state(self, source: PythPriceSource) -> None:
        with patch(
            "keeper.oracles.pyth.aiohttp.ClientSession", return_value=_mock_session(status=500)
        ):
            with patch("keeper.oracles.pyth.aiohttp.TCPConnector"):
                await source.update()

        assert source.latest() is None
        assert source.last_update is None

    @pytest.mark.asyncio
    async def test_network_error_logged_not_raised(self, source: PythPriceSource) -> None:
        mock_session = _mock_session()
        mock_session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))

        with patch("keeper.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("keeper.oracles.pyth.aiohttp.TCPConnector"):
                await source.update()

        assert source.latest() is None


class TestHistorical:
    @pytest.mark.asyncio
    async def test_fetches_once_then_serves_from_history(self, source: PythPriceSource) -> None:
        mock_session = _mock_session(data=_make_pyth_response(price="98", expo=-2))

        with patch("keeper.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("keeper.oracles.pyth.aiohttp.TCPConnector"):
                first = await source.get_historical_price(1_650)
                second = await source.get_historical_price(1_650)

        assert first == second == Decimal("0.98")
        assert mock_session.get.call_count == 1
        assert "/v2/updates/price/1650?" in mock_session.get.call_args[0][0]
        assert source.history.price_at(1_650) == Decimal("0.98")

    @pytest.mark.asyncio
    async def test_not_found_raises(self, source: PythPriceSource) -> None:
        with patch(
            "keeper.oracles.pyth.aiohttp.ClientSession", return_value=_mock_session(status=404)
        ):
            with patch("keeper.oracles.pyth.aiohttp.TCPConnector"):
                with pytest.raises(PriceUnavailableError):
                    await source.get_historical_price(1_650)

    @pytest.mark.asyncio
    async def test_feed_missing_from_response_raises(self, source: PythPriceSource) -> None:
        mock_session = _mock_session(data={"parsed": []})
        with patch("keeper.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("keeper.oracles.pyth.aiohttp.TCPConnector"):
                with pytest.raises(PriceUnavailableError):
                    await source.get_historical_price(1_650)

    @pytest.mark.asyncio
    async def test_network_error_raises_price_unavailable(self, source: PythPriceSource) -> None:
        mock_session = _mock_session()
        mock_session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))
        with patch("keeper.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("keeper.oracles.pyth.aiohttp.TCPConnector"):
                with pytest.raises(PriceUnavailableError):
                    await source.get_historical_price(1_650)
