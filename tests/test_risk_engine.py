from __future__ import annotations

from dataclasses import replace

import numpy as np
import pytest

from portfolio_risk_system.config import (
    ConfigurationError,
    HedgingConfig,
    HedgingStrategy,
    HedgingTrigger,
    RiskEngineConfig,
    RiskLimits,
    StressTestConfig,
)
from portfolio_risk_system.events import EventBus, EventCategory, EventSeverity, FundEventType, RiskAlertType
from portfolio_risk_system.risk import (
    STRESS_SCENARIOS,
    RiskEngine,
    RiskSnapshotStore,
    TransactionRiskRequest,
)
from portfolio_risk_system.types import OrderSide, Position, RiskMetricsSnapshot, StressScenario


def _position(asset: str, quantity: float, price: float, weight: float) -> Position:
    position = Position.open(asset, quantity, price)
    position.weight = weight
    return position


def _book() -> list[Position]:
    return [
        _position("TON", 10_000, 5.0, 0.25),
        _position("BTC", 3, 50_000.0, 0.75),
    ]


def _scenario(scenario_id: str) -> StressScenario:
    return next(s for s in STRESS_SCENARIOS if s.scenario_id == scenario_id)


def test_empty_or_invalid_portfolio_yields_zeroed_snapshot() -> None:
    engine = RiskEngine(fund_id="f1")
    for positions, value in [([], 100_000.0), (_book(), 0.0), (_book(), float("nan"))]:
        metrics = engine.calculate_metrics(positions, value)
        assert metrics.var99 == 0.0
        assert metrics.concentration == 0.0
        assert metrics.liquidity == 1.0
    assert engine.snapshots.version("f1") == 3


def test_metrics_for_position_book() -> None:
    engine = RiskEngine()
    metrics = engine.calculate_metrics(_book(), 200_000.0)
    assert metrics.var95 == pytest.approx(0.02)
    assert metrics.var99 == pytest.approx(0.03)
    assert metrics.cvar == pytest.approx(0.04)
    assert metrics.leverage == pytest.approx(1.0)
    assert metrics.concentration == pytest.approx(0.75)
    assert metrics.liquidity == pytest.approx(0.25)
    assert metrics.beta == 1.0
    assert engine.latest_metrics() == metrics


def test_beta_uses_aligned_benchmark_history() -> None:
    engine = RiskEngine()
    bench = np.random.default_rng(4).normal(0.0, 0.01, 25)
    for b in bench:
        engine.add_historical_return(1.5 * b, benchmark_return=b)
    metrics = engine.calculate_metrics(_book(), 200_000.0)
    assert metrics.beta == pytest.approx(1.5)


def test_return_buffer_is_capped_at_lookback() -> None:
    config = RiskEngineConfig()
    config.var.lookback_days = 10
    engine = RiskEngine(config)
    for i in range(25):
        engine.add_historical_return(i / 1000)
    assert len(engine.returns_history()) == 10
    assert engine.returns_history()[0] == pytest.approx(0.015)


def test_check_limits_records_alerts_and_publishes_breach() -> None:
    bus = EventBus()
    engine = RiskEngine(fund_id="f1", event_bus=bus)
    metrics = engine.calculate_metrics(_book(), 200_000.0)

    result = engine.check_limits(metrics)

    assert not result.passed
    assert [v.limit for v in result.violations] == ["max_concentration"]
    assert result.violations[0].severity == EventSeverity.WARNING
    assert not result.has_critical
    alerts = engine.alerts()
    assert len(alerts) == 1
    assert alerts[0].alert_type == RiskAlertType.CONCENTRATION_WARNING
    types = [e.event_type for e in bus.recent(EventCategory.RISK)]
    assert FundEventType.RISK_ALERT in types
    assert FundEventType.RISK_LIMIT_BREACH in types


def test_drawdown_warning_creates_warning_alert() -> None:
    engine = RiskEngine()
    metrics = replace(RiskMetricsSnapshot.zeroed(), current_drawdown=0.12)
    result = engine.check_limits(metrics)
    assert result.passed
    assert [w.limit for w in result.warnings] == ["drawdown_warning"]
    alerts = engine.alerts(alert_types=["drawdown_warning"])
    assert len(alerts) == 1
    assert alerts[0].severity == EventSeverity.WARNING


def test_critical_violations_for_var_drawdown_and_leverage() -> None:
    engine = RiskEngine()
    metrics = replace(RiskMetricsSnapshot.zeroed(), var99=0.2, current_drawdown=0.3, leverage=3.0)
    result = engine.check_limits(metrics)
    assert result.has_critical
    assert {v.limit for v in result.violations} == {"max_var", "max_drawdown", "max_leverage"}
    assert len(engine.alerts(severities=[EventSeverity.CRITICAL])) == 3


def test_alert_filters_and_acknowledgement() -> None:
    engine = RiskEngine()
    engine.check_limits(replace(RiskMetricsSnapshot.zeroed(), concentration=0.5, liquidity=0.01))
    alerts = engine.alerts()
    assert len(alerts) == 2

    assert engine.acknowledge_alert(alerts[0].alert_id, "risk-officer")
    assert not engine.acknowledge_alert("missing", "risk-officer")
    acknowledged = engine.alerts(acknowledged=True)
    assert [a.alert_id for a in acknowledged] == [alerts[0].alert_id]
    assert acknowledged[0].acknowledged_by == "risk-officer"
    assert acknowledged[0].acknowledged_at is not None
    assert len(engine.alerts(acknowledged=False)) == 1
    assert engine.alerts(until=alerts[0].created_at.replace(year=2000)) == []

    engine.clear_alerts()
    assert engine.alerts() == []


def test_loss_limits_check_daily_and_weekly_returns() -> None:
    engine = RiskEngine()
    engine.add_historical_return(-0.06)
    daily = engine.check_loss_limits()
    assert [v.limit for v in daily.violations] == ["max_daily_loss"]

    engine = RiskEngine()
    for _ in range(7):
        engine.add_historical_return(-0.02)
    weekly = engine.check_loss_limits()
    assert [v.limit for v in weekly.violations] == ["max_weekly_loss"]
    assert weekly.violations[0].alert_type == RiskAlertType.LOSS_LIMIT

    assert RiskEngine().check_loss_limits().passed


def test_set_limits_validates_and_publishes() -> None:
    bus = EventBus()
    engine = RiskEngine(event_bus=bus)
    engine.set_limits(RiskLimits(max_concentration=0.9))
    assert engine.limits.max_concentration == 0.9
    assert bus.recent(EventCategory.LIFECYCLE)[-1].event_type == FundEventType.CONFIG_UPDATED
    with pytest.raises(ConfigurationError):
        engine.set_limits(RiskLimits(max_var=-1.0))
    assert engine.limits.max_concentration == 0.9


def test_transaction_impact_flags_concentration_without_storing_snapshot() -> None:
    engine = RiskEngine(fund_id="f1")
    book = [_position("TON", 10_000, 5.0, 0.25)]
    request = TransactionRiskRequest(
        side=OrderSide.BUY,
        asset="BTC",
        quantity=3,
        estimated_price=50_000.0,
        current_positions=book,
        portfolio_value=200_000.0,
    )
    impact = engine.check_transaction_impact(request)
    assert not impact.approved
    assert impact.new_concentration == pytest.approx(0.75)
    assert impact.concentration_change == pytest.approx(0.5)
    assert any("concentration" in v for v in impact.violations)
    assert engine.snapshots.version("f1") == 0


def test_stress_loss_stays_within_beta_band() -> None:
    engine = RiskEngine(rng=123)
    position = _position("TON", 200, 5.0, 1.0)
    for _ in range(200):
        result = engine.run_stress_test(_scenario("moderate_correction"), [position])
        assert 0.16 - 1e-12 <= result.portfolio_loss_percent <= 0.24 + 1e-12
        assert result.worst_asset == "TON"


def test_correlation_breakdown_amplifies_within_band() -> None:
    engine = RiskEngine(rng=9)
    position = _position("TON", 200, 5.0, 1.0)
    for _ in range(200):
        result = engine.run_stress_test(_scenario("terra_luna_2022"), [position])
        assert 0.7 * 0.8 - 1e-12 <= result.portfolio_loss_percent <= 0.7 * 1.2 * 1.2 + 1e-12


def test_stress_test_recommendations_and_events() -> None:
    bus = EventBus()
    engine = RiskEngine(event_bus=bus, rng=1)
    result = engine.run_stress_test(_scenario("moderate_correction"), [_position("TON", 200, 5.0, 1.0)])
    assert result.recommendations == ["Consider reducing overall portfolio exposure"]

    crisis = engine.run_stress_test(_scenario("black_swan"), [_position("TON", 200, 5.0, 1.0)])
    assert "Consider reducing position in TON or adding hedges" in crisis.recommendations
    assert "Maintain higher cash reserves for liquidity events" in crisis.recommendations
    assert crisis.risk_metrics is not None
    assert crisis.risk_metrics.liquidity == 0.05

    events = bus.recent(EventCategory.RISK)
    assert [e.event_type for e in events] == [FundEventType.STRESS_TEST_COMPLETED] * 2


def test_stress_test_on_empty_portfolio_reports_zero_loss() -> None:
    result = RiskEngine().run_stress_test(_scenario("black_swan"), [])
    assert result.portfolio_loss == 0.0
    assert result.portfolio_loss_percent == 0.0
    assert result.worst_asset == ""


def test_stress_catalog_includes_enabled_and_custom_scenarios() -> None:
    custom = StressScenario("depeg", "Depeg", "Stablecoin depeg", market_move=-0.1)
    config = RiskEngineConfig(
        stress_test=StressTestConfig(scenarios=["black_swan", "covid_crash_2020"], custom_scenarios=[custom])
    )
    engine = RiskEngine(config)
    assert [s.scenario_id for s in engine.stress_scenarios()] == ["covid_crash_2020", "black_swan", "depeg"]
    assert len(engine.run_all_stress_tests(_book())) == 3


def test_hedging_first_triggered_strategy_wins() -> None:
    put = HedgingStrategy(
        strategy_id="var-put",
        hedge_type="put",
        trigger=HedgingTrigger(metric="var", threshold=0.02),
        instruments=["TON-PUT", "BTC-PUT"],
        target_exposure=0.2,
    )
    future = HedgingStrategy("beta-future", "future", HedgingTrigger(metric="beta", threshold=0.5), ["BTC-PERP"])
    engine = RiskEngine(RiskEngineConfig(hedging=HedgingConfig(enabled=True, strategies=[put, future])))
    metrics = engine.calculate_metrics(_book(), 200_000.0)

    recommendation = engine.check_hedging_needed(metrics)
    assert recommendation is not None
    assert recommendation.needed
    assert recommendation.strategy.strategy_id == "var-put"
    assert recommendation.urgency == "high"
    assert recommendation.estimated_cost == pytest.approx(0.005)

    legs = engine.calculate_hedge_positions(put, 1_000_000.0)
    assert [leg.asset for leg in legs] == ["TON-PUT", "BTC-PUT"]
    assert all(leg.side == OrderSide.SELL for leg in legs)
    assert all(leg.notional == pytest.approx(100_000.0) for leg in legs)


def test_hedging_disabled_or_untriggered_returns_none() -> None:
    strategy = HedgingStrategy("vol", "put", HedgingTrigger(metric="volatility", threshold=0.5))
    metrics = RiskMetricsSnapshot.zeroed()
    assert RiskEngine().check_hedging_needed(metrics) is None
    enabled = RiskEngine(RiskEngineConfig(hedging=HedgingConfig(enabled=True, strategies=[strategy])))
    assert enabled.check_hedging_needed(metrics) is None


def test_snapshot_store_versions_and_bounds_history() -> None:
    store = RiskSnapshotStore(history_size=2)
    snapshots = [replace(RiskMetricsSnapshot.zeroed(), var99=i / 100) for i in range(3)]
    for snapshot in snapshots:
        store.put("f1", snapshot)
    history = store.history("f1")
    assert [entry.version for entry in history] == [2, 3]
    assert store.latest("f1").snapshot.var99 == pytest.approx(0.02)
    assert store.latest("f2") is None
    assert store.history("f1", limit=1)[0].version == 3
    assert store.history("f1", limit=0) == []


def test_alert_history_keeps_only_the_newest_alerts() -> None:
    engine = RiskEngine(RiskEngineConfig(alert_history_size=10))
    for step in range(50):
        engine.check_limits(replace(RiskMetricsSnapshot.zeroed(), current_drawdown=0.101 + step / 10_000))
    alerts = engine.alerts()
    assert len(alerts) == 10
    assert alerts[-1].current_value == pytest.approx(0.101 + 49 / 10_000)
    assert alerts[0].current_value == pytest.approx(0.101 + 40 / 10_000)

    engine.configure(RiskEngineConfig(alert_history_size=4))
    assert [a.current_value for a in engine.alerts()] == [a.current_value for a in alerts[-4:]]


def test_alert_history_size_must_be_positive() -> None:
    with pytest.raises(ConfigurationError):
        RiskEngineConfig(alert_history_size=0).validate()


def test_disabled_stress_testing_skips_the_scenario_set() -> None:
    bus = EventBus()
    engine = RiskEngine(RiskEngineConfig(stress_test=StressTestConfig(enabled=False)), event_bus=bus)
    assert engine.run_all_stress_tests(_book()) == []
    assert bus.recent(EventCategory.RISK) == []
    assert engine.run_stress_test(_scenario("covid_crash_2020"), _book()).scenario_name


def _var_put(threshold: float = 0.02, operator: str = "above", metric: str = "var") -> HedgingStrategy:
    trigger = HedgingTrigger(metric=metric, threshold=threshold, operator=operator)
    return HedgingStrategy("hedge", "put", trigger, ["TON-PUT"])


@pytest.mark.parametrize(
    ("var99", "urgency"),
    [(0.03, "high"), (0.023, "medium"), (0.021, "low")],
)
def test_hedging_urgency_tiers(var99: float, urgency: str) -> None:
    engine = RiskEngine(RiskEngineConfig(hedging=HedgingConfig(enabled=True, strategies=[_var_put()])))
    recommendation = engine.check_hedging_needed(replace(RiskMetricsSnapshot.zeroed(), var99=var99))
    assert recommendation.urgency == urgency
    assert recommendation.metric_value == pytest.approx(var99)


def test_hedging_below_trigger_fires_under_threshold() -> None:
    strategy = _var_put(threshold=0.5, operator="below", metric="beta")
    engine = RiskEngine(RiskEngineConfig(hedging=HedgingConfig(enabled=True, strategies=[strategy])))

    recommendation = engine.check_hedging_needed(replace(RiskMetricsSnapshot.zeroed(), beta=0.2))
    assert recommendation.strategy.strategy_id == "hedge"
    assert recommendation.reason.startswith("beta (0.2000) below threshold")
    assert recommendation.urgency == "low"

    assert engine.check_hedging_needed(replace(RiskMetricsSnapshot.zeroed(), beta=0.8)) is None
