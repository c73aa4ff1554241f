"""Portfolio Risk System package."""

from .config import (
    ConfigurationError,
    ExecutionConfig,
    FundConfig,
    PortfolioConfig,
    RiskEngineConfig,
    RiskLimits,
    SystemConfig,
    load_config,
)
from .orchestration import FundStateError, FundStatus, FundSupervisor

__all__ = [
    "ConfigurationError",
    "ExecutionConfig",
    "FundConfig",
    "FundStateError",
    "FundStatus",
    "FundSupervisor",
    "PortfolioConfig",
    "RiskEngineConfig",
    "RiskLimits",
    "SystemConfig",
    "load_config",
]
