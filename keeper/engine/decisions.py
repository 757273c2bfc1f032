"""Action selection: which positions to liquidate, which liquidations to dispute,
and which finished liquidations can be withdrawn.

Everything here is a pure function of its inputs. Nothing touches the ledger;
a target whose reference price is unknown is skipped with a warning.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping

from ..errors import ConfigurationError
from ..models import (
    TERMINAL_STATES,
    ActionDecision,
    ActionKind,
    LiquidationRecord,
    LiquidationState,
    Position,
)

logger = logging.getLogger(__name__)


def _same(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


def is_undercollateralized(
    position: Position,
    price: Decimal,
    collateral_requirement: Decimal,
    cr_threshold: Decimal = Decimal(0),
) -> bool:
    """True when the position's collateral, net of any pending withdrawal
    request, does not cover its debt at the required ratio plus the
    ``cr_threshold`` buffer."""
    required = position.debt * price * collateral_requirement * (1 + cr_threshold)
    return net_collateral(position) < required


def net_collateral(position: Position) -> Decimal:
    request = position.withdrawal_request
    if request is None:
        return position.collateral
    return position.collateral - request.amount


def is_deviation_outside_margin(
    observed: Decimal, expected: Decimal, margin: Decimal
) -> bool:
    """Symmetric relative deviation of ``observed`` from ``expected``."""
    if expected == 0:
        return observed != 0
    return abs(observed - expected) / abs(expected) > margin


def is_owed(
    liquidation: LiquidationRecord,
    account: str,
    now: int,
    liquidation_liveness: int,
) -> bool:
    """True when ``account`` may have funds to withdraw from ``liquidation``.

    PENDING_DISPUTE records are included for both parties since the dispute may
    already be resolvable; a withdrawal that would revert is dropped at execution.
    """
    is_liquidator = _same(liquidation.liquidator, account)
    is_disputer = _same(liquidation.disputer, account)
    state = liquidation.state

    if state == LiquidationState.PRE_DISPUTE:
        return is_liquidator and liquidation.liquidation_time + liquidation_liveness <= now
    if state == LiquidationState.PENDING_DISPUTE:
        return is_liquidator or is_disputer
    if state == LiquidationState.DISPUTE_SUCCEEDED:
        return is_liquidator or is_disputer or _same(liquidation.sponsor, account)
    if state == LiquidationState.DISPUTE_FAILED:
        return is_liquidator
    return False


def select_liquidation_targets(
    positions: Iterable[Position],
    price: Decimal | None,
    collateral_requirement: Decimal,
    cr_threshold: Decimal = Decimal(0),
    override_price: Decimal | None = None,
    available_balance: Decimal | None = None,
    min_sponsor_tokens: Decimal = Decimal(0),
) -> list[ActionDecision]:
    """Positions that are undercollateralized at ``price`` (or ``override_price``).

    With ``available_balance`` the liquidated debt is bounded: a position is
    liquidated in full while the balance covers it, partially if the remainder
    leaves at least ``min_sponsor_tokens`` outstanding, and skipped otherwise.
    """
    effective_price = override_price if override_price is not None else price
    positions = list(positions)
    if effective_price is None:
        if positions:
            logger.warning(
                "No reference price available, skipping %d positions", len(positions)
            )
        return []

    remaining = available_balance
    decisions: list[ActionDecision] = []
    for position in positions:
        if not is_undercollateralized(
            position, effective_price, collateral_requirement, cr_threshold
        ):
            continue

        amount = position.debt
        if remaining is not None:
            if remaining <= 0:
                logger.warning(
                    "No balance left to liquidate %s (debt %s)", position.sponsor, position.debt
                )
                continue
            if remaining < position.debt:
                if position.debt - remaining < min_sponsor_tokens:
                    logger.warning(
                        "Balance %s too small for a partial liquidation of %s "
                        "(debt %s, min sponsor tokens %s)",
                        remaining,
                        position.sponsor,
                        position.debt,
                        min_sponsor_tokens,
                    )
                    continue
                amount = remaining
            remaining -= amount

        decisions.append(
            ActionDecision(
                kind=ActionKind.LIQUIDATE,
                sponsor=position.sponsor,
                computed_price=effective_price,
                amount=amount,
            )
        )
    return decisions


def select_dispute_targets(
    liquidations: Iterable[LiquidationRecord],
    prices: Mapping[int, Decimal | None],
    now: int,
    dispute_price_error: Decimal,
    dispute_delay: int,
    override_price: Decimal | None = None,
) -> list[ActionDecision]:
    """PRE_DISPUTE liquidations whose asserted price is off the reference price.

    ``prices`` maps a liquidation time to the reference price at that time.
    Liquidations younger than ``dispute_delay`` seconds are never disputed.
    """
    if dispute_delay < 0:
        raise ConfigurationError(f"dispute_delay must be >= 0, got {dispute_delay}")

    decisions: list[ActionDecision] = []
    for liquidation in liquidations:
        if liquidation.state != LiquidationState.PRE_DISPUTE:
            continue
        if now - liquidation.liquidation_time < dispute_delay:
            logger.debug(
                "Liquidation %s/%d too recent to dispute (%ds < %ds)",
                liquidation.sponsor,
                liquidation.liquidation_id,
                now - liquidation.liquidation_time,
                dispute_delay,
            )
            continue

        if override_price is not None:
            reference = override_price
        else:
            reference = prices.get(liquidation.liquidation_time)
        if reference is None:
            logger.warning(
                "No reference price at %d, skipping liquidation %s/%d",
                liquidation.liquidation_time,
                liquidation.sponsor,
                liquidation.liquidation_id,
            )
            continue

        if not is_deviation_outside_margin(
            liquidation.liquidated_price, reference, dispute_price_error
        ):
            logger.debug(
                "Liquidation %s/%d within margin: liquidated at %s, reference %s",
                liquidation.sponsor,
                liquidation.liquidation_id,
                liquidation.liquidated_price,
                reference,
            )
            continue

        decisions.append(
            ActionDecision(
                kind=ActionKind.DISPUTE,
                sponsor=liquidation.sponsor,
                liquidation_id=liquidation.liquidation_id,
                computed_price=reference,
            )
        )
    return decisions


def select_settleable_actions(
    liquidations: Iterable[LiquidationRecord],
    account: str,
    now: int,
    liquidation_liveness: int,
) -> list[ActionDecision]:
    return [
        ActionDecision(
            kind=ActionKind.SETTLE,
            sponsor=liquidation.sponsor,
            liquidation_id=liquidation.liquidation_id,
        )
        for liquidation in liquidations
        if is_owed(liquidation, account, now, liquidation_liveness)
    ]


@dataclass(frozen=True)
class DecisionEngine:
    """Validated decision settings bound to the three selection functions."""

    collateral_requirement: Decimal
    cr_threshold: Decimal = Decimal(0)
    dispute_price_error: Decimal = Decimal("0.05")
    dispute_delay: int = 0
    min_sponsor_tokens: Decimal = Decimal(0)
    liquidation_liveness: int = 0

    def __post_init__(self) -> None:
        if not Decimal(0) <= self.cr_threshold < Decimal(1):
            raise ConfigurationError(f"cr_threshold must be in [0, 1), got {self.cr_threshold}")
        if self.dispute_delay < 0:
            raise ConfigurationError(f"dispute_delay must be >= 0, got {self.dispute_delay}")
        if self.dispute_price_error < 0:
            raise ConfigurationError("dispute_price_error must be >= 0")
        if self.collateral_requirement <= 0:
            raise ConfigurationError("collateral_requirement must be > 0")
        if self.min_sponsor_tokens < 0:
            raise ConfigurationError("min_sponsor_tokens must be >= 0")

    def liquidation_targets(
        self,
        positions: Iterable[Position],
        price: Decimal | None,
        override_price: Decimal | None = None,
        available_balance: Decimal | None = None,
    ) -> list[ActionDecision]:
        return select_liquidation_targets(
            positions,
            price,
            self.collateral_requirement,
            self.cr_threshold,
            override_price=override_price,
            available_balance=available_balance,
            min_sponsor_tokens=self.min_sponsor_tokens,
        )

    def dispute_targets(
        self,
        liquidations: Iterable[LiquidationRecord],
        prices: Mapping[int, Decimal | None],
        now: int,
        override_price: Decimal | None = None,
    ) -> list[ActionDecision]:
        return select_dispute_targets(
            liquidations,
            prices,
            now,
            self.dispute_price_error,
            self.dispute_delay,
            override_price=override_price,
        )

    def settleable_actions(
        self, liquidations: Iterable[LiquidationRecord], account: str, now: int
    ) -> list[ActionDecision]:
        return select_settleable_actions(
            liquidations, account, now, self.liquidation_liveness
        )


__all__ = [
    "TERMINAL_STATES",
    "DecisionEngine",
    "is_deviation_outside_margin",
    "is_owed",
    "is_undercollateralized",
    "net_collateral",
    "select_dispute_targets",
    "select_liquidation_targets",
    "select_settleable_actions",
]
