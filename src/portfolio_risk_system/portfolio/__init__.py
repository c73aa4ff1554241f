"""Portfolio tracking and allocation package."""

from .optimizer import OptimalAllocation, apply_constraints, optimize_allocation
from .tracker import (
    AllocationDrift,
    PortfolioMetrics,
    PortfolioTracker,
    RebalanceCheck,
    RebalanceExecutor,
    RebalanceResult,
)

__all__ = [
    "AllocationDrift",
    "OptimalAllocation",
    "PortfolioMetrics",
    "PortfolioTracker",
    "RebalanceCheck",
    "RebalanceExecutor",
    "RebalanceResult",
    "apply_constraints",
    "optimize_allocation",
]
