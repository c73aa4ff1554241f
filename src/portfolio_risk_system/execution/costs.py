"""Transaction cost, price impact and venue models."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from portfolio_risk_system.config import ExecutionConfig
from portfolio_risk_system.types import OrderSide


def price_impact(notional: float) -> float:
    """Step-function impact by order notional."""
    value = abs(notional)
    if value < 1_000:
        return 0.001
    if value < 10_000:
        return 0.003
    if value < 100_000:
        return 0.01
    return 0.03


def estimate_slippage(notional: float, base_slippage: float = 0.001) -> float:
    return base_slippage + price_impact(notional)


def apply_slippage_to_price(price: float, side: OrderSide | str, slippage: float) -> float:
    """Buys pay up, sells give up."""
    multiplier = 1.0 + slippage if OrderSide(side) == OrderSide.BUY else 1.0 - slippage
    return float(price * multiplier)


def simulate_price(reference_price: float, side: OrderSide | str, notional: float) -> float:
    return apply_slippage_to_price(reference_price, side, price_impact(notional))


def venue_fee(config: ExecutionConfig, venue: str) -> float:
    return float(config.venue_fees.get(venue, config.default_venue_fee))


def venue_liquidity(config: ExecutionConfig, venue: str) -> float:
    return float(config.venue_liquidity.get(venue, config.default_venue_liquidity))


def estimate_gas(config: ExecutionConfig, route_count: int) -> float:
    return config.gas_per_route * route_count


def slice_weights(profile: Sequence[float]) -> np.ndarray:
    """Normalize a relative volume profile into slice fractions summing to 1."""
    weights = np.asarray(profile, dtype=float).clip(min=0.0)
    total = weights.sum()
    if total <= 0:
        raise ValueError("volume profile must contain positive weight")
    return weights / total
