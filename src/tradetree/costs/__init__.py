"""Cost layer -- venue cost profiles, cost model and stake solver."""

from tradetree.costs.cost_model import CostBreakdown, CostModel, cost_efficiency
from tradetree.costs.profiles import VENUE_COST_PROFILES, CostModelConfig, get_profile
from tradetree.costs.stake_solver import CostCalculationResult, StakeSolution, StakeSolver

__all__ = [
    "VENUE_COST_PROFILES",
    "CostBreakdown",
    "CostCalculationResult",
    "CostModel",
    "CostModelConfig",
    "StakeSolution",
    "StakeSolver",
    "cost_efficiency",
    "get_profile",
]
