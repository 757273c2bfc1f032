"""Unit tests for low-water-mark allowance management."""
from __future__ import annotations

import pytest

from keeper.config import MAX_UINT
from keeper.execution.allowance import LOW_WATER_MARK, AllowanceManager
from keeper.execution.gas import GasEstimator
from tests.fakes import ACCOUNT, COLLATERAL, CONTRACT, PROXY, ROUTER, FakeLedger, program_tokens


def _manager(ledger: FakeLedger) -> AllowanceManager:
    return AllowanceManager(ledger, ACCOUNT, GasEstimator(ledger))


def _allowance_reads(ledger: FakeLedger) -> int:
    return sum(1 for call in ledger.calls if call.name == "allowance")


class TestEnsure:
    @pytest.mark.asyncio
    async def test_approves_when_below_low_water_mark(self, fake_ledger: FakeLedger) -> None:
        program_tokens(fake_ledger, allowances={(COLLATERAL, ACCOUNT): 0})
        manager = _manager(fake_ledger)

        receipt = await manager.ensure(CONTRACT, COLLATERAL)

        assert receipt is not None
        assert fake_ledger.sent_names() == ["approve"]
        approve = fake_ledger.sent[0]
        assert approve.account == ACCOUNT
        assert approve.call.to == COLLATERAL
        assert approve.call.args == (CONTRACT, MAX_UINT)

    @pytest.mark.asyncio
    async def test_sufficient_allowance_returns_none(self, fake_ledger: FakeLedger) -> None:
        program_tokens(fake_ledger, allowances={(COLLATERAL, ACCOUNT): LOW_WATER_MARK})
        assert await _manager(fake_ledger).ensure(CONTRACT, COLLATERAL) is None
        assert fake_ledger.sent == []

    @pytest.mark.asyncio
    async def test_just_below_low_water_mark_reapproves(self, fake_ledger: FakeLedger) -> None:
        program_tokens(fake_ledger, allowances={(COLLATERAL, ACCOUNT): LOW_WATER_MARK - 1})
        assert await _manager(fake_ledger).ensure(CONTRACT, COLLATERAL) is not None

    @pytest.mark.asyncio
    async def test_cached_after_approval(self, fake_ledger: FakeLedger) -> None:
        program_tokens(fake_ledger, allowances={(COLLATERAL, ACCOUNT): 0})
        manager = _manager(fake_ledger)
        await manager.ensure(CONTRACT, COLLATERAL)
        reads = _allowance_reads(fake_ledger)

        assert await manager.ensure(CONTRACT, COLLATERAL) is None
        assert _allowance_reads(fake_ledger) == reads
        assert manager.cached(CONTRACT, COLLATERAL).current_amount == MAX_UINT

    @pytest.mark.asyncio
    async def test_spending_below_mark_rereads_ledger(self, fake_ledger: FakeLedger) -> None:
        program_tokens(fake_ledger)
        manager = _manager(fake_ledger)
        await manager.ensure(CONTRACT, COLLATERAL)
        reads = _allowance_reads(fake_ledger)

        manager.record_spend(CONTRACT, COLLATERAL, MAX_UINT - LOW_WATER_MARK + 1)
        await manager.ensure(CONTRACT, COLLATERAL)

        assert _allowance_reads(fake_ledger) == reads + 1


class TestApprovalCall:
    @pytest.mark.asyncio
    async def test_builds_call_for_proxy(self, fake_ledger: FakeLedger) -> None:
        program_tokens(fake_ledger, allowances={(COLLATERAL, PROXY): 0})
        manager = _manager(fake_ledger)

        call = await manager.approval_call_if_needed(PROXY, ROUTER, COLLATERAL)

        assert call is not None
        assert call.name == "approve"
        assert call.args == (ROUTER, MAX_UINT)
        assert fake_ledger.sent == []

    @pytest.mark.asyncio
    async def test_call_repeated_until_approval_recorded(self, fake_ledger: FakeLedger) -> None:
        program_tokens(fake_ledger, allowances={(COLLATERAL, PROXY): 0})
        manager = _manager(fake_ledger)

        assert await manager.approval_call_if_needed(PROXY, ROUTER, COLLATERAL) is not None
        assert await manager.approval_call_if_needed(PROXY, ROUTER, COLLATERAL) is not None

        manager.record_approval(ROUTER, COLLATERAL, owner=PROXY)
        assert await manager.approval_call_if_needed(PROXY, ROUTER, COLLATERAL) is None
        assert manager.cached(ROUTER, COLLATERAL, owner=PROXY).current_amount == MAX_UINT

    @pytest.mark.asyncio
    async def test_sufficient_proxy_allowance(self, fake_ledger: FakeLedger) -> None:
        program_tokens(fake_ledger)
        call = await _manager(fake_ledger).approval_call_if_needed(PROXY, ROUTER, COLLATERAL)
        assert call is None
