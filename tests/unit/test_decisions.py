"""Unit tests for liquidation, dispute and withdrawal selection."""
from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal

import pytest

from keeper.engine import (
    DecisionEngine,
    is_deviation_outside_margin,
    net_collateral,
    select_dispute_targets,
    select_liquidation_targets,
    select_settleable_actions,
)
from keeper.errors import ConfigurationError
from keeper.models import (
    ActionKind,
    LiquidationRecord,
    LiquidationState,
    Position,
    WithdrawalRequest,
)
from tests.fakes import ACCOUNT, OTHER, SPONSOR_A, SPONSOR_B

CR = Decimal("1.2")
NOW = 20_000


class TestLiquidationTargets:
    def test_healthy_position_not_selected(self, healthy_position: Position) -> None:
        # 125 collateral against 100 debt at price 1.0 is 1.25 >= 1.2.
        assert select_liquidation_targets([healthy_position], Decimal("1.0"), CR) == []

    def test_underwater_position_selected(self, healthy_position: Position) -> None:
        # At 1.75 the ratio falls to 0.714.
        decisions = select_liquidation_targets([healthy_position], Decimal("1.75"), CR)
        assert len(decisions) == 1
        assert decisions[0].kind == ActionKind.LIQUIDATE
        assert decisions[0].sponsor == SPONSOR_A
        assert decisions[0].amount == Decimal(100)
        assert decisions[0].computed_price == Decimal("1.75")

    def test_cr_threshold_adds_buffer(self, healthy_position: Position) -> None:
        # 125 < 100 * 1.0 * 1.2 * 1.05 = 126.
        decisions = select_liquidation_targets(
            [healthy_position], Decimal("1.0"), CR, cr_threshold=Decimal("0.05")
        )
        assert [d.sponsor for d in decisions] == [SPONSOR_A]

    def test_exact_boundary_not_selected(self) -> None:
        position = Position(SPONSOR_A, collateral=Decimal(120), debt=Decimal(100))
        assert select_liquidation_targets([position], Decimal(1), CR) == []

    def test_pending_withdrawal_counts_against_collateral(
        self, healthy_position: Position
    ) -> None:
        # 125 - 20 = 105 < 120 once the withdrawal request is netted out.
        position = replace(healthy_position, withdrawal_request=WithdrawalRequest(Decimal(20), 0))
        decisions = select_liquidation_targets([position], Decimal(1), CR)
        assert [d.sponsor for d in decisions] == [SPONSOR_A]
        assert net_collateral(position) == Decimal(105)

    def test_small_withdrawal_keeps_position_healthy(self, healthy_position: Position) -> None:
        position = replace(healthy_position, withdrawal_request=WithdrawalRequest(Decimal(5), 0))
        assert select_liquidation_targets([position], Decimal(1), CR) == []

    def test_selects_only_violating_positions(self) -> None:
        positions = [
            Position(SPONSOR_A, collateral=Decimal(200), debt=Decimal(100)),
            Position(SPONSOR_B, collateral=Decimal(100), debt=Decimal(100)),
        ]
        decisions = select_liquidation_targets(positions, Decimal("1.5"), CR)
        assert [d.sponsor for d in decisions] == [SPONSOR_B]

    def test_missing_price_skips_with_warning(
        self, healthy_position: Position, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING):
            assert select_liquidation_targets([healthy_position], None, CR) == []
        assert "No reference price" in caplog.text

    def test_override_price_used_when_price_missing(self, healthy_position: Position) -> None:
        decisions = select_liquidation_targets(
            [healthy_position], None, CR, override_price=Decimal("2")
        )
        assert decisions[0].computed_price == Decimal("2")

    def test_override_price_wins_over_feed(self, healthy_position: Position) -> None:
        decisions = select_liquidation_targets(
            [healthy_position], Decimal("5"), CR, override_price=Decimal("1")
        )
        assert decisions == []

    def test_balance_limits_liquidation_size(self) -> None:
        positions = [
            Position(SPONSOR_A, collateral=Decimal(10), debt=Decimal(100)),
            Position(SPONSOR_B, collateral=Decimal(10), debt=Decimal(100)),
        ]
        decisions = select_liquidation_targets(
            positions,
            Decimal(1),
            CR,
            available_balance=Decimal(150),
            min_sponsor_tokens=Decimal(10),
        )
        assert [(d.sponsor, d.amount) for d in decisions] == [
            (SPONSOR_A, Decimal(100)),
            (SPONSOR_B, Decimal(50)),
        ]

    def test_partial_below_min_sponsor_tokens_skipped(self) -> None:
        positions = [Position(SPONSOR_A, collateral=Decimal(10), debt=Decimal(100))]
        decisions = select_liquidation_targets(
            positions,
            Decimal(1),
            CR,
            available_balance=Decimal(50),
            min_sponsor_tokens=Decimal(60),
        )
        assert decisions == []

    def test_zero_balance_skips(self) -> None:
        positions = [Position(SPONSOR_A, collateral=Decimal(10), debt=Decimal(100))]
        assert (
            select_liquidation_targets(positions, Decimal(1), CR, available_balance=Decimal(0))
            == []
        )


class TestDisputeTargets:
    def _liquidation(self, record: LiquidationRecord, **changes) -> LiquidationRecord:
        return replace(record, **changes)

    def test_deviation_outside_tolerance_disputed(
        self, pre_dispute_liquidation: LiquidationRecord
    ) -> None:
        prices = {pre_dispute_liquidation.liquidation_time: Decimal("1.06")}
        decisions = select_dispute_targets(
            [pre_dispute_liquidation], prices, NOW, Decimal("0.05"), 60
        )
        assert len(decisions) == 1
        assert decisions[0].kind == ActionKind.DISPUTE
        assert decisions[0].liquidation_id == 0
        assert decisions[0].computed_price == Decimal("1.06")

    def test_deviation_within_tolerance_not_disputed(
        self, pre_dispute_liquidation: LiquidationRecord
    ) -> None:
        prices = {pre_dispute_liquidation.liquidation_time: Decimal("1.02")}
        assert (
            select_dispute_targets([pre_dispute_liquidation], prices, NOW, Decimal("0.05"), 60)
            == []
        )

    def test_recent_liquidation_never_disputed(
        self, pre_dispute_liquidation: LiquidationRecord
    ) -> None:
        recent = self._liquidation(pre_dispute_liquidation, liquidation_time=NOW - 10)
        prices = {recent.liquidation_time: Decimal("3")}
        assert select_dispute_targets([recent], prices, NOW, Decimal("0.05"), 60) == []

    def test_delay_boundary_is_inclusive(
        self, pre_dispute_liquidation: LiquidationRecord
    ) -> None:
        aged = self._liquidation(pre_dispute_liquidation, liquidation_time=NOW - 60)
        prices = {aged.liquidation_time: Decimal("3")}
        assert len(select_dispute_targets([aged], prices, NOW, Decimal("0.05"), 60)) == 1

    def test_only_pre_dispute_considered(
        self, pre_dispute_liquidation: LiquidationRecord
    ) -> None:
        disputed = self._liquidation(
            pre_dispute_liquidation, state=LiquidationState.PENDING_DISPUTE
        )
        prices = {disputed.liquidation_time: Decimal("3")}
        assert select_dispute_targets([disputed], prices, NOW, Decimal("0.05"), 0) == []

    def test_missing_reference_price_skipped(
        self, pre_dispute_liquidation: LiquidationRecord, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING):
            decisions = select_dispute_targets(
                [pre_dispute_liquidation], {}, NOW, Decimal("0.05"), 0
            )
        assert decisions == []
        assert "No reference price" in caplog.text

    def test_override_price_replaces_lookup(
        self, pre_dispute_liquidation: LiquidationRecord
    ) -> None:
        decisions = select_dispute_targets(
            [pre_dispute_liquidation], {}, NOW, Decimal("0.05"), 0, override_price=Decimal("2")
        )
        assert decisions[0].computed_price == Decimal("2")

    def test_negative_delay_rejected(
        self, pre_dispute_liquidation: LiquidationRecord
    ) -> None:
        with pytest.raises(ConfigurationError, match="dispute_delay"):
            select_dispute_targets([pre_dispute_liquidation], {}, NOW, Decimal("0.05"), -1)


class TestDeviation:
    def test_symmetric(self) -> None:
        assert is_deviation_outside_margin(Decimal("1.0"), Decimal("1.06"), Decimal("0.05"))
        assert is_deviation_outside_margin(Decimal("1.12"), Decimal("1.06"), Decimal("0.05"))
        assert not is_deviation_outside_margin(Decimal("1.0"), Decimal("1.02"), Decimal("0.05"))

    def test_zero_reference(self) -> None:
        assert is_deviation_outside_margin(Decimal(1), Decimal(0), Decimal("0.05"))
        assert not is_deviation_outside_margin(Decimal(0), Decimal(0), Decimal("0.05"))


class TestSettleableActions:
    def _record(self, state: LiquidationState, **changes) -> LiquidationRecord:
        record = LiquidationRecord(
            sponsor=SPONSOR_A,
            liquidation_id=2,
            liquidator=ACCOUNT,
            locked_collateral=Decimal(100),
            tokens_outstanding=Decimal(100),
            liquidation_time=NOW - 100,
            state=state,
            liquidated_price=Decimal(1),
        )
        return replace(record, **changes)

    def test_failed_dispute_pays_liquidator(self) -> None:
        decisions = select_settleable_actions(
            [self._record(LiquidationState.DISPUTE_FAILED)], ACCOUNT, NOW, 7200
        )
        assert [(d.kind, d.sponsor, d.liquidation_id) for d in decisions] == [
            (ActionKind.SETTLE, SPONSOR_A, 2)
        ]

    def test_other_accounts_not_owed(self) -> None:
        record = self._record(LiquidationState.DISPUTE_FAILED)
        assert select_settleable_actions([record], OTHER, NOW, 7200) == []

    def test_succeeded_dispute_pays_disputer(self) -> None:
        record = self._record(
            LiquidationState.DISPUTE_SUCCEEDED, liquidator=OTHER, disputer=ACCOUNT
        )
        assert len(select_settleable_actions([record], ACCOUNT, NOW, 7200)) == 1

    def test_expired_pre_dispute_settleable(self) -> None:
        record = self._record(LiquidationState.PRE_DISPUTE, liquidation_time=NOW - 7200)
        assert len(select_settleable_actions([record], ACCOUNT, NOW, 7200)) == 1

    def test_live_pre_dispute_not_settleable(self) -> None:
        record = self._record(LiquidationState.PRE_DISPUTE, liquidation_time=NOW - 100)
        assert select_settleable_actions([record], ACCOUNT, NOW, 7200) == []

    def test_address_case_ignored(self) -> None:
        record = self._record(LiquidationState.DISPUTE_FAILED, liquidator="0x" + "ab" * 20)
        decisions = select_settleable_actions([record], "0x" + "AB" * 20, NOW, 0)
        assert len(decisions) == 1


class TestDecisionEngine:
    def test_rejects_cr_threshold_of_one(self) -> None:
        with pytest.raises(ConfigurationError, match="cr_threshold"):
            DecisionEngine(collateral_requirement=CR, cr_threshold=Decimal(1))

    def test_rejects_negative_dispute_delay(self) -> None:
        with pytest.raises(ConfigurationError, match="dispute_delay"):
            DecisionEngine(collateral_requirement=CR, dispute_delay=-5)

    def test_rejects_zero_collateral_requirement(self) -> None:
        with pytest.raises(ConfigurationError, match="collateral_requirement"):
            DecisionEngine(collateral_requirement=Decimal(0))

    def test_binds_settings(
        self, healthy_position: Position, pre_dispute_liquidation: LiquidationRecord
    ) -> None:
        engine = DecisionEngine(
            collateral_requirement=CR,
            cr_threshold=Decimal("0.05"),
            dispute_price_error=Decimal("0.05"),
            dispute_delay=60,
        )
        assert len(engine.liquidation_targets([healthy_position], Decimal(1))) == 1
        prices = {pre_dispute_liquidation.liquidation_time: Decimal("1.06")}
        assert len(engine.dispute_targets([pre_dispute_liquidation], prices, NOW)) == 1
