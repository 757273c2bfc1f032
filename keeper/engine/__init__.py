from .decisions import (
    DecisionEngine,
    is_deviation_outside_margin,
    is_owed,
    is_undercollateralized,
    net_collateral,
    select_dispute_targets,
    select_liquidation_targets,
    select_settleable_actions,
)

__all__ = [
    "DecisionEngine",
    "is_deviation_outside_margin",
    "is_owed",
    "is_undercollateralized",
    "net_collateral",
    "select_dispute_targets",
    "select_liquidation_targets",
    "select_settleable_actions",
]
