"""Return-series statistics shared by the risk engine and the portfolio tracker."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

DAYS_PER_YEAR = 365


def _as_array(returns: Sequence[float] | np.ndarray) -> np.ndarray:
    return np.asarray(returns, dtype=float)


def sample_volatility(returns: Sequence[float] | np.ndarray, default: float = 0.0) -> float:
    """Sample standard deviation (ddof=1); `default` when fewer than two points."""
    arr = _as_array(returns)
    if arr.size < 2:
        return float(default)
    return float(np.std(arr, ddof=1))


def downside_deviation(
    returns: Sequence[float] | np.ndarray,
    threshold: float = 0.0,
    default: float = 0.0,
) -> float:
    """Root mean square shortfall below `threshold`, averaged over the shortfall count."""
    arr = _as_array(returns)
    downside = arr[arr < threshold]
    if downside.size < 2:
        return float(default)
    return float(np.sqrt(np.mean((downside - threshold) ** 2)))


def excess_mean(
    returns: Sequence[float] | np.ndarray,
    risk_free_annual: float = 0.05,
    periods_per_year: int = DAYS_PER_YEAR,
) -> float:
    arr = _as_array(returns)
    mean = float(arr.mean()) if arr.size else 0.0
    return mean - risk_free_annual / periods_per_year


def sharpe_ratio(
    returns: Sequence[float] | np.ndarray,
    risk_free_annual: float = 0.05,
    periods_per_year: int = DAYS_PER_YEAR,
    volatility: float | None = None,
) -> float:
    vol = sample_volatility(returns) if volatility is None else volatility
    if vol <= 0:
        return 0.0
    return float(excess_mean(returns, risk_free_annual, periods_per_year) * np.sqrt(periods_per_year) / vol)


def sortino_ratio(
    returns: Sequence[float] | np.ndarray,
    risk_free_annual: float = 0.05,
    periods_per_year: int = DAYS_PER_YEAR,
    downside: float | None = None,
) -> float:
    dd = downside_deviation(returns) if downside is None else downside
    if dd <= 0:
        return 0.0
    return float(excess_mean(returns, risk_free_annual, periods_per_year) * np.sqrt(periods_per_year) / dd)


def drawdown_stats(returns: Sequence[float] | np.ndarray) -> tuple[float, float]:
    """Return (max_drawdown, current_drawdown) as positive fractions of the running peak."""
    arr = _as_array(returns)
    if arr.size == 0:
        return 0.0, 0.0
    equity = np.cumprod(1.0 + arr)
    peaks = np.maximum.accumulate(np.concatenate(([1.0], equity)))[1:]
    drawdowns = (peaks - equity) / peaks
    return float(max(drawdowns.max(), 0.0)), float(max(drawdowns[-1], 0.0))


def compounded_return(returns: Sequence[float] | np.ndarray) -> float:
    arr = _as_array(returns)
    if arr.size == 0:
        return 0.0
    return float(np.prod(1.0 + arr) - 1.0)


def win_rate(returns: Sequence[float] | np.ndarray) -> float:
    arr = _as_array(returns)
    if arr.size == 0:
        return 0.0
    return float((arr > 0).sum() / arr.size)


def profit_factor(returns: Sequence[float] | np.ndarray) -> float:
    arr = _as_array(returns)
    gains = float(arr[arr > 0].sum())
    losses = float(-arr[arr < 0].sum())
    if losses == 0:
        return 0.0 if gains == 0 else float("inf")
    return gains / losses


def beta(returns: Sequence[float] | np.ndarray, benchmark: Sequence[float] | np.ndarray) -> float | None:
    """Covariance beta against an aligned benchmark series, None when undefined."""
    arr = _as_array(returns)
    bench = _as_array(benchmark)
    if arr.size != bench.size or arr.size < 3:
        return None
    var_b = np.var(bench, ddof=1)
    if var_b <= 0:
        return None
    return float(np.cov(arr, bench, ddof=1)[0, 1] / var_b)
