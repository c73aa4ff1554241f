"""Stress scenario catalog and scenario replay over a position set."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import numpy as np

from portfolio_risk_system.time_utils import now_utc
from portfolio_risk_system.types import Position, RiskMetricsSnapshot, StressScenario

BETA_SPREAD = 0.2
MAX_CORRELATION_AMPLIFIER = 0.2

STRESS_SCENARIOS: tuple[StressScenario, ...] = (
    StressScenario(
        scenario_id="financial_crisis_2008",
        name="2008 Financial Crisis",
        description="Simulates the 2008 global financial crisis with severe market decline",
        market_move=-0.55,
        volatility_spike=3.0,
        correlation_breakdown=True,
        liquidity_crisis=True,
        duration_days=90,
    ),
    StressScenario(
        scenario_id="covid_crash_2020",
        name="2020 COVID Crash",
        description="Simulates the March 2020 COVID-19 market crash",
        market_move=-0.35,
        volatility_spike=4.0,
        correlation_breakdown=False,
        liquidity_crisis=True,
        duration_days=30,
    ),
    StressScenario(
        scenario_id="terra_luna_2022",
        name="2022 Terra/Luna Collapse",
        description="Simulates the Terra/Luna ecosystem collapse",
        market_move=-0.70,
        volatility_spike=5.0,
        correlation_breakdown=True,
        liquidity_crisis=True,
        duration_days=14,
    ),
    StressScenario(
        scenario_id="ftx_collapse_2022",
        name="2022 FTX Collapse",
        description="Simulates the FTX exchange collapse and contagion",
        market_move=-0.25,
        volatility_spike=2.5,
        correlation_breakdown=False,
        liquidity_crisis=True,
        duration_days=7,
    ),
    StressScenario(
        scenario_id="black_swan",
        name="Black Swan Event",
        description="Extreme tail risk scenario",
        market_move=-0.80,
        volatility_spike=10.0,
        correlation_breakdown=True,
        liquidity_crisis=True,
        duration_days=3,
    ),
    StressScenario(
        scenario_id="moderate_correction",
        name="Moderate Market Correction",
        description="Standard 20% market correction",
        market_move=-0.20,
        volatility_spike=1.5,
        correlation_breakdown=False,
        liquidity_crisis=False,
        duration_days=60,
    ),
)


@dataclass(slots=True)
class PositionImpact:
    asset: str
    current_value: float
    stressed_value: float
    loss: float
    loss_percent: float


@dataclass(slots=True)
class StressTestResult:
    scenario_id: str
    scenario_name: str
    timestamp: datetime
    portfolio_loss: float
    portfolio_loss_percent: float
    worst_asset: str
    worst_asset_loss: float
    position_impacts: list[PositionImpact] = field(default_factory=list)
    risk_metrics: RiskMetricsSnapshot | None = None
    recommendations: list[str] = field(default_factory=list)


def scenario_catalog(
    enabled_ids: list[str],
    custom: list[StressScenario] | None = None,
) -> list[StressScenario]:
    """Built-in scenarios whose id is enabled, followed by custom scenarios."""
    built_in = [s for s in STRESS_SCENARIOS if s.scenario_id in enabled_ids]
    return built_in + list(custom or [])


def run_stress_test(
    scenario: StressScenario,
    positions: list[Position],
    rng: np.random.Generator,
) -> StressTestResult:
    """
    Shock every position by `market_move * beta`.

    Each position draws its own beta from U(0.8, 1.2). When the scenario
    breaks correlations the move is further amplified by U(1.0, 1.2).
    """
    portfolio_value = float(sum(p.market_value for p in positions))
    impacts: list[PositionImpact] = []
    stressed_total = 0.0

    for position in positions:
        asset_beta = 1.0 + rng.uniform(-BETA_SPREAD, BETA_SPREAD)
        correlation_effect = (
            1.0 + rng.uniform(0.0, MAX_CORRELATION_AMPLIFIER) if scenario.correlation_breakdown else 1.0
        )
        asset_move = scenario.market_move * asset_beta * correlation_effect
        stressed_value = position.market_value * (1.0 + asset_move)
        loss = position.market_value - stressed_value
        impacts.append(
            PositionImpact(
                asset=position.asset,
                current_value=position.market_value,
                stressed_value=stressed_value,
                loss=loss,
                loss_percent=loss / position.market_value if position.market_value else 0.0,
            )
        )
        stressed_total += stressed_value

    portfolio_loss = portfolio_value - stressed_total if impacts else 0.0
    loss_percent = portfolio_loss / portfolio_value if portfolio_value > 0 else 0.0
    worst = max(impacts, key=lambda impact: impact.loss) if impacts else None

    recommendations: list[str] = []
    if loss_percent > 0.15:
        recommendations.append("Consider reducing overall portfolio exposure")
    if worst is not None and worst.loss_percent > 0.3:
        recommendations.append(f"Consider reducing position in {worst.asset} or adding hedges")
    if scenario.liquidity_crisis:
        recommendations.append("Maintain higher cash reserves for liquidity events")

    stressed_metrics = RiskMetricsSnapshot(
        timestamp=now_utc(),
        var95=loss_percent * 0.8,
        var99=loss_percent,
        cvar=loss_percent * 1.2,
        beta=1.0,
        sharpe=0.0,
        sortino=0.0,
        max_drawdown=loss_percent,
        current_drawdown=loss_percent,
        leverage=1.0,
        concentration=0.0,
        liquidity=0.05 if scenario.liquidity_crisis else 0.20,
    )

    return StressTestResult(
        scenario_id=scenario.scenario_id,
        scenario_name=scenario.name,
        timestamp=now_utc(),
        portfolio_loss=portfolio_loss,
        portfolio_loss_percent=loss_percent,
        worst_asset=worst.asset if worst else "",
        worst_asset_loss=worst.loss if worst else 0.0,
        position_impacts=impacts,
        risk_metrics=stressed_metrics,
        recommendations=recommendations,
    )
