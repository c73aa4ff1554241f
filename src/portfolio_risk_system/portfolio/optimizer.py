"""Target allocation construction under per-asset caps."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd

from portfolio_risk_system.config import PortfolioConstraints

CASH = "cash"
PLACEHOLDER_RETURN = 0.15
PLACEHOLDER_VOLATILITY = 0.20
PLACEHOLDER_CONFIDENCE = 0.75


@dataclass(slots=True)
class OptimalAllocation:
    allocations: dict[str, float]
    expected_return: float
    expected_volatility: float
    expected_sharpe: float
    confidence: float
    method: str


def _cap_and_redistribute(weights: pd.Series, max_weight: float) -> pd.Series:
    """
    Normalize to 1, then repeatedly clip at `max_weight` and hand the excess
    to uncapped assets pro rata. Stops once nothing is over the cap or every
    asset sits at it; only in the latter case does the sum fall below 1.
    """
    out = weights.copy()
    out = out.clip(lower=0.0)
    if out.sum() <= 0:
        return out
    out = out / out.sum()
    # each pass pins at least one more asset at the cap
    for _ in range(len(out) + 1):
        capped = out.clip(upper=max_weight)
        excess = float((out - capped).sum())
        out = capped
        if excess <= 1e-12:
            break
        free = out[out < max_weight - 1e-12]
        if free.empty:
            break
        share = free / free.sum() if free.sum() > 0 else pd.Series(1.0 / len(free), index=free.index)
        out.loc[free.index] = free + excess * share
    return out.clip(upper=max_weight)


def apply_constraints(weights: Mapping[str, float], constraints: PortfolioConstraints) -> dict[str, float]:
    """
    Normalize to 1 and cap every asset at `max_single_asset`.

    When the cap cannot absorb the full budget (too few assets), the
    remainder is held under the `cash` key so the result still sums to 1.
    """
    series = pd.Series({k: float(v) for k, v in weights.items() if k != CASH}, dtype=float)
    if series.empty or series.clip(lower=0.0).sum() <= 0:
        return {CASH: 1.0}
    capped = _cap_and_redistribute(series, constraints.max_single_asset)
    out = {asset: float(w) for asset, w in capped.items() if w > 0}
    residual = 1.0 - sum(out.values())
    if residual > 1e-9:
        out[CASH] = residual
    return out


def equal_weights(assets: Sequence[str]) -> dict[str, float]:
    if not assets:
        return {}
    weight = 1.0 / len(assets)
    return {asset: weight for asset in assets}


def inverse_volatility_weights(
    assets: Sequence[str],
    asset_returns: Mapping[str, Sequence[float]],
) -> dict[str, float]:
    """Simplified risk parity: weight proportional to 1/vol; equal weights without usable history."""
    vols = pd.Series(
        {
            asset: float(np.std(asset_returns[asset], ddof=1)) if len(asset_returns.get(asset, ())) >= 2 else np.nan
            for asset in assets
        },
        dtype=float,
    )
    if vols.empty or vols.isna().any() or (vols <= 0).any():
        return equal_weights(assets)
    inverse = 1.0 / vols
    return (inverse / inverse.sum()).to_dict()


def expected_stats(
    allocations: Mapping[str, float],
    asset_returns: Mapping[str, Sequence[float]],
    periods_per_year: int = 365,
    min_history: int = 2,
) -> tuple[float, float, float] | None:
    """Annualized (return, volatility, confidence) from aligned per-asset history, if available."""
    assets = [a for a, w in allocations.items() if a != CASH and w > 0]
    if not assets or any(len(asset_returns.get(a, ())) < min_history for a in assets):
        return None
    length = min(len(asset_returns[a]) for a in assets)
    frame = pd.DataFrame({a: list(asset_returns[a])[-length:] for a in assets}, dtype=float)
    weights = pd.Series({a: allocations[a] for a in assets}, dtype=float)
    exp_return = float((frame.mean() * weights).sum() * periods_per_year)
    variance = float(weights.values @ frame.cov().values @ weights.values)
    exp_vol = float(np.sqrt(max(variance, 0.0) * periods_per_year))
    confidence = float(min(0.95, 0.5 + length / (2.0 * periods_per_year)))
    return exp_return, exp_vol, confidence


def optimize_allocation(
    method: str,
    target_allocation: Mapping[str, float],
    constraints: PortfolioConstraints,
    asset_returns: Mapping[str, Sequence[float]] | None = None,
) -> OptimalAllocation:
    asset_returns = asset_returns or {}
    assets = [a for a in target_allocation if a != CASH]
    if method == "equal_weight":
        raw = equal_weights(assets)
    elif method == "risk_parity":
        raw = inverse_volatility_weights(assets, asset_returns)
    else:
        # mean_variance and black_litterman start from the configured targets.
        raw = {a: target_allocation[a] for a in assets}

    allocations = apply_constraints(raw, constraints)
    stats = expected_stats(allocations, asset_returns)
    if stats is None:
        exp_return, exp_vol, confidence = PLACEHOLDER_RETURN, PLACEHOLDER_VOLATILITY, PLACEHOLDER_CONFIDENCE
    else:
        exp_return, exp_vol, confidence = stats
    return OptimalAllocation(
        allocations=allocations,
        expected_return=exp_return,
        expected_volatility=exp_vol,
        expected_sharpe=exp_return / exp_vol if exp_vol > 0 else 0.0,
        confidence=confidence,
        method=method,
    )
