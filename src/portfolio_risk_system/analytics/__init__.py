"""Analytics package."""

from .metrics import (
    beta,
    compounded_return,
    downside_deviation,
    drawdown_stats,
    profit_factor,
    sample_volatility,
    sharpe_ratio,
    sortino_ratio,
    win_rate,
)

__all__ = [
    "beta",
    "compounded_return",
    "downside_deviation",
    "drawdown_stats",
    "profit_factor",
    "sample_volatility",
    "sharpe_ratio",
    "sortino_ratio",
    "win_rate",
]
