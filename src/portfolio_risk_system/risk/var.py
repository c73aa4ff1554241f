"""Value-at-Risk estimators over a rolling return buffer."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
import math

import numpy as np

from portfolio_risk_system.analytics.metrics import sample_volatility

logger = logging.getLogger(__name__)

Z_95 = 1.645
Z_99 = 2.326
PARAMETRIC_CVAR_MULTIPLIER = 1.15
DEFAULT_DAILY_VOL = 0.02
FALLBACK_VAR95 = 0.02
FALLBACK_VAR99 = 0.03
FALLBACK_CVAR = 0.04


@dataclass(frozen=True, slots=True)
class VaRResult:
    """VaR/CVaR in currency units, already scaled to the horizon."""

    var95: float
    var99: float
    cvar: float
    method: str
    confidence: float
    time_horizon_days: int


def historical_var(
    returns: Sequence[float] | np.ndarray,
    portfolio_value: float,
    min_samples: int = 30,
) -> tuple[float, float, float]:
    """Empirical quantile VaR; flat 2%/3%/4% of value when history is short."""
    arr = np.sort(np.asarray(returns, dtype=float))
    n = arr.size
    if n < min_samples:
        return (
            portfolio_value * FALLBACK_VAR95,
            portfolio_value * FALLBACK_VAR99,
            portfolio_value * FALLBACK_CVAR,
        )
    index95 = int(math.floor(n * 0.05))
    index99 = int(math.floor(n * 0.01))
    var95 = -float(arr[index95]) * portfolio_value
    var99 = -float(arr[index99]) * portfolio_value
    cvar = -float(arr[: index99 + 1].mean()) * portfolio_value
    return var95, var99, cvar


def parametric_var(
    returns: Sequence[float] | np.ndarray,
    portfolio_value: float,
) -> tuple[float, float, float]:
    """Normal-distribution VaR from sample volatility (2% daily when history is short)."""
    vol = sample_volatility(returns, default=DEFAULT_DAILY_VOL)
    var95 = portfolio_value * vol * Z_95
    var99 = portfolio_value * vol * Z_99
    return var95, var99, var99 * PARAMETRIC_CVAR_MULTIPLIER


def box_muller_normals(rng: np.random.Generator, size: int) -> np.ndarray:
    """Standard normal draws from paired uniforms (Box-Muller transform)."""
    u1 = 1.0 - rng.random(size)  # (0, 1] so the log is finite
    u2 = rng.random(size)
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


def monte_carlo_var(
    returns: Sequence[float] | np.ndarray,
    portfolio_value: float,
    simulations: int,
    rng: np.random.Generator,
    min_samples: int = 30,
) -> tuple[float, float, float]:
    vol = sample_volatility(returns, default=DEFAULT_DAILY_VOL) or DEFAULT_DAILY_VOL
    simulated = box_muller_normals(rng, int(simulations)) * vol
    return historical_var(simulated, portfolio_value, min_samples=min_samples)


def estimate_var(
    method: str,
    returns: Sequence[float] | np.ndarray,
    portfolio_value: float,
    confidence: float,
    time_horizon_days: int,
    simulations: int,
    rng: np.random.Generator,
    min_samples: int = 30,
) -> VaRResult:
    """Dispatch to the configured estimator and apply square-root-of-time scaling."""
    if method == "parametric":
        var95, var99, cvar = parametric_var(returns, portfolio_value)
    elif method == "monte_carlo":
        var95, var99, cvar = monte_carlo_var(returns, portfolio_value, simulations, rng, min_samples)
    else:
        if method != "historical":
            logger.warning("Unknown VaR method %r, falling back to historical", method)
            method = "historical"
        if len(returns) < min_samples:
            logger.debug("Only %d return samples, using flat VaR fallback", len(returns))
        var95, var99, cvar = historical_var(returns, portfolio_value, min_samples)

    scale = math.sqrt(time_horizon_days)
    return VaRResult(
        var95=var95 * scale,
        var99=var99 * scale,
        cvar=cvar * scale,
        method=method,
        confidence=confidence,
        time_horizon_days=time_horizon_days,
    )
