"""Unit tests for the gas price estimator."""
from __future__ import annotations

from decimal import Decimal

import pytest

from keeper.config import GasConfig
from keeper.execution.gas import GasEstimator
from tests.fakes import FakeLedger


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestGasEstimator:
    @pytest.mark.asyncio
    async def test_applies_multiplier(self, fake_ledger: FakeLedger) -> None:
        gas = GasEstimator(fake_ledger, GasConfig(multiplier=Decimal("1.5")))
        await gas.update()
        assert await gas.get_current_fast_price() == 15 * 10**9

    @pytest.mark.asyncio
    async def test_lazy_first_update(self, fake_ledger: FakeLedger) -> None:
        gas = GasEstimator(fake_ledger)
        assert await gas.get_current_fast_price() == 10 * 10**9

    @pytest.mark.asyncio
    async def test_respects_update_interval(self, fake_ledger: FakeLedger) -> None:
        clock = _Clock()
        gas = GasEstimator(fake_ledger, GasConfig(update_interval=60), clock=clock)
        await gas.update()

        fake_ledger.gas_price_wei = 20 * 10**9
        clock.now = 30
        await gas.update()
        assert await gas.get_current_fast_price() == 10 * 10**9

        clock.now = 61
        await gas.update()
        assert await gas.get_current_fast_price() == 20 * 10**9
