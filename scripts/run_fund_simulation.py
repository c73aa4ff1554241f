"""Run a bounded fund simulation over synthetic price paths."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import numpy as np
import pandas as pd

from portfolio_risk_system.config import (
    ExecutionConfig,
    FundConfig,
    PortfolioConfig,
    SystemConfig,
    load_config,
)
from portfolio_risk_system.events import AlertRouter, EventSeverity, SQLiteEventStore
from portfolio_risk_system.orchestration import FundSupervisor, ManualTicker

DEMO_PRICES = {"TON": 5.0, "USDT": 1.0, "NOT": 0.01}
DEMO_VOLATILITY = {"TON": 0.04, "USDT": 0.001, "NOT": 0.08}


def demo_config() -> SystemConfig:
    return SystemConfig(
        fund=FundConfig(fund_id="demo-fund", name="Demo Fund", initial_capital=1_000_000.0),
        portfolio=PortfolioConfig(
            target_allocation={"TON": 0.40, "USDT": 0.35, "NOT": 0.15},
            rebalance_threshold=0.05,
        ),
        execution=ExecutionConfig(reference_prices=dict(DEMO_PRICES)),
    )


def make_price_paths(
    prices: dict[str, float],
    volatility: dict[str, float],
    steps: int,
    seed: int,
) -> pd.DataFrame:
    """Geometric random walk per asset; one row per tick."""
    rng = np.random.default_rng(seed)
    paths = {}
    for asset, start in prices.items():
        shocks = rng.normal(0.0, volatility.get(asset, 0.02), steps)
        paths[asset] = start * np.exp(np.cumsum(shocks))
    return pd.DataFrame(paths)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a simulated fund through risk and rebalance cycles.")
    parser.add_argument("--config", default=None, help="Optional YAML system config.")
    parser.add_argument("--cycles", type=int, default=30, help="Number of ticks to run.")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--alerts-jsonl", default=None, help="Write warning+ events to this JSONL file.")
    parser.add_argument("--event-db", default=None, help="Persist all events to this SQLite file.")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.config) if args.config else demo_config()
    ticker = ManualTicker()
    supervisor = FundSupervisor(config, ticker=ticker, rng=args.seed)

    if args.alerts_jsonl:
        AlertRouter.with_console_and_file(Path(args.alerts_jsonl), min_severity=EventSeverity.WARNING).attach(
            supervisor.event_bus
        )
    if args.event_db:
        SQLiteEventStore(Path(args.event_db)).attach(supervisor.event_bus)

    assets = list(config.portfolio.target_allocation) or list(DEMO_PRICES)
    start_prices = {
        asset: config.execution.reference_prices.get(asset, DEMO_PRICES.get(asset, config.execution.default_reference_price))
        for asset in assets
    }
    paths = make_price_paths(start_prices, DEMO_VOLATILITY, max(args.cycles, 1), args.seed)

    supervisor.initialize()
    supervisor.mark_prices(start_prices)
    supervisor.start()

    rows = []
    for step, prices in paths.iterrows():
        supervisor.mark_prices(prices.to_dict())
        outcomes = ticker.fire()
        outcome = outcomes[0] if outcomes else None
        rows.append(
            {
                "step": step,
                "status": str(supervisor.status),
                "total_value": supervisor.tracker.total_value(),
                "var99": outcome.metrics.var99 if outcome and outcome.metrics else None,
                "drawdown": outcome.metrics.current_drawdown if outcome and outcome.metrics else None,
                "rebalanced": bool(outcome and outcome.rebalance and outcome.rebalance.orders_executed),
                "error": outcome.error if outcome else None,
            }
        )
        if not ticker.running:
            break

    supervisor.stop("Simulation complete")

    summary = pd.DataFrame(rows)
    print(summary.to_string(index=False))
    stress = supervisor.run_stress_tests()
    print(f"Stress scenarios run: {stress.scenarios_run}, worst: {stress.worst_scenario} ({stress.worst_loss_percent:.2%})")
    for line in stress.recommendations:
        print(f"  - {line}")
    attribution = supervisor.attribution()
    print("Attribution by asset:", {k: round(v, 6) for k, v in attribution.by_asset.items()})


if __name__ == "__main__":
    main()
