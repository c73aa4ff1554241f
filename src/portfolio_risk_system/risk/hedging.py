"""Hedging trigger evaluation and hedge sizing."""

from __future__ import annotations

from dataclasses import dataclass

from portfolio_risk_system.config import HedgingConfig, HedgingStrategy
from portfolio_risk_system.types import OrderSide, RiskMetricsSnapshot

# No cross-asset correlation model is maintained; correlation triggers read this constant.
ASSUMED_CORRELATION = 0.5


@dataclass(slots=True)
class HedgingRecommendation:
    needed: bool
    reason: str
    strategy: HedgingStrategy
    urgency: str
    estimated_cost: float
    metric_value: float


@dataclass(slots=True)
class HedgePosition:
    asset: str
    side: OrderSide
    quantity: float
    notional: float
    purpose: str


def metric_value_for(metric: str, metrics: RiskMetricsSnapshot, volatility: float) -> float | None:
    if metric == "var":
        return metrics.var99
    if metric == "volatility":
        return volatility
    if metric == "drawdown":
        return metrics.current_drawdown
    if metric == "beta":
        return metrics.beta
    if metric == "correlation":
        return ASSUMED_CORRELATION
    return None


def urgency_for(value: float, threshold: float) -> str:
    if value > threshold * 1.2:
        return "high"
    if value > threshold * 1.1:
        return "medium"
    return "low"


def find_hedge(
    config: HedgingConfig,
    metrics: RiskMetricsSnapshot,
    volatility: float,
) -> HedgingRecommendation | None:
    """First strategy whose trigger fires wins; None when hedging is disabled or nothing fires."""
    if not config.enabled:
        return None
    for strategy in config.strategies:
        trigger = strategy.trigger
        value = metric_value_for(trigger.metric, metrics, volatility)
        if value is None:
            continue
        fired = value > trigger.threshold if trigger.operator == "above" else value < trigger.threshold
        if not fired:
            continue
        return HedgingRecommendation(
            needed=True,
            reason=f"{trigger.metric} ({value:.4f}) {trigger.operator} threshold ({trigger.threshold})",
            strategy=strategy,
            urgency=urgency_for(value, trigger.threshold),
            estimated_cost=config.max_hedge_cost * 0.5,
            metric_value=value,
        )
    return None


def size_hedge(strategy: HedgingStrategy, portfolio_value: float) -> list[HedgePosition]:
    """One short leg per instrument, target notional split evenly across legs."""
    if not strategy.instruments:
        return []
    target_notional = portfolio_value * strategy.target_exposure
    per_leg = target_notional / len(strategy.instruments)
    return [
        HedgePosition(
            asset=instrument,
            side=OrderSide.SELL,
            quantity=target_notional / 100.0,
            notional=per_leg,
            purpose=f"{strategy.hedge_type} hedge",
        )
        for instrument in strategy.instruments
    ]
