"""Fund supervision and tick scheduling."""

from .scheduler import CancellationToken, ManualTicker, ThreadTicker, Ticker
from .supervisor import (
    FundPerformance,
    FundStateError,
    FundStatus,
    FundSupervisor,
    HedgingCheck,
    PerformanceAttribution,
    RiskCheckOutcome,
    StressTestOutcome,
    TickOutcome,
)

__all__ = [
    "CancellationToken",
    "FundPerformance",
    "FundStateError",
    "FundStatus",
    "FundSupervisor",
    "HedgingCheck",
    "ManualTicker",
    "PerformanceAttribution",
    "RiskCheckOutcome",
    "StressTestOutcome",
    "ThreadTicker",
    "TickOutcome",
    "Ticker",
]
