"""Risk management package."""

from .engine import RiskEngine
from .hedging import HedgePosition, HedgingRecommendation
from .limits import (
    LimitCheckResult,
    LimitViolation,
    LimitWarning,
    TransactionImpactResult,
    TransactionRiskRequest,
)
from .snapshots import RiskSnapshotStore, VersionedSnapshot
from .stress import STRESS_SCENARIOS, PositionImpact, StressTestResult
from .var import VaRResult

__all__ = [
    "HedgePosition",
    "HedgingRecommendation",
    "LimitCheckResult",
    "LimitViolation",
    "LimitWarning",
    "PositionImpact",
    "RiskEngine",
    "RiskSnapshotStore",
    "STRESS_SCENARIOS",
    "StressTestResult",
    "TransactionImpactResult",
    "TransactionRiskRequest",
    "VaRResult",
    "VersionedSnapshot",
]
