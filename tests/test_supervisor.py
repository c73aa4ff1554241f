from __future__ import annotations

import time

import pytest

from portfolio_risk_system import (
    ExecutionConfig,
    FundConfig,
    FundStateError,
    FundStatus,
    FundSupervisor,
    PortfolioConfig,
    RiskLimits,
    SystemConfig,
)
from portfolio_risk_system.config import FundRiskConfig
from portfolio_risk_system.events import EventCategory, FundEventType
from portfolio_risk_system.orchestration import ManualTicker, ThreadTicker
from portfolio_risk_system.orchestration.supervisor import EMERGENCY_STOP_REASON, merge_fund_limits
from portfolio_risk_system.types import Position


def _config(**portfolio) -> SystemConfig:
    target = portfolio.pop("target_allocation", {"TON": 0.4, "USDT": 0.4})
    return SystemConfig(
        fund=FundConfig(fund_id="f1", initial_capital=10_000.0, risk=FundRiskConfig(max_concentration=0.5)),
        portfolio=PortfolioConfig(target_allocation=target, **portfolio),
        execution=ExecutionConfig(reference_prices={"TON": 5.0, "USDT": 1.0}),
    )


def _supervisor(config: SystemConfig | None = None, **kwargs) -> FundSupervisor:
    supervisor = FundSupervisor(config or _config(), rng=7, **kwargs)
    supervisor.initialize()
    return supervisor


def _lifecycle_types(supervisor: FundSupervisor) -> list[FundEventType]:
    return [e.event_type for e in supervisor.event_bus.recent(EventCategory.LIFECYCLE)]


def test_initialize_applies_fund_limits_and_capital() -> None:
    supervisor = _supervisor()
    assert supervisor.status == FundStatus.INITIALIZING
    assert supervisor.tracker.state().cash == pytest.approx(10_000.0)
    assert supervisor.risk_engine.limits.max_concentration == 0.5
    assert supervisor.config.risk.limits.max_concentration == 0.5
    assert supervisor.tracker.price_for("TON") == 5.0
    assert supervisor.tracker.price_for("USDT") == 1.0


def test_merge_fund_limits_keeps_engine_only_limits() -> None:
    config = _config()
    merged = merge_fund_limits(RiskLimits(max_var=0.2, max_concentration=0.9), config)
    assert merged.max_var == 0.2
    assert merged.max_concentration == 0.5
    assert merged.max_drawdown == config.fund.risk.max_drawdown


def test_tick_is_a_no_op_until_started() -> None:
    supervisor = _supervisor()
    assert supervisor.tick() is None
    assert supervisor.tick_count == 0


def test_lifecycle_transitions_and_events() -> None:
    ticker = ManualTicker()
    supervisor = _supervisor(ticker=ticker)

    supervisor.start()
    supervisor.start()
    assert supervisor.status == FundStatus.ACTIVE
    assert ticker.running

    supervisor.pause("maintenance")
    assert supervisor.status == FundStatus.PAUSED
    assert supervisor.pause_reason == "maintenance"
    assert not ticker.running
    assert supervisor.tick() is None

    supervisor.resume()
    assert supervisor.status == FundStatus.ACTIVE
    assert supervisor.pause_reason is None
    assert ticker.running

    supervisor.stop()
    supervisor.stop()
    assert supervisor.status == FundStatus.CLOSED
    assert not ticker.running

    types = [t for t in _lifecycle_types(supervisor) if t != FundEventType.CONFIG_UPDATED]
    assert types == [
        FundEventType.FUND_STARTED,
        FundEventType.FUND_PAUSED,
        FundEventType.FUND_RESUMED,
        FundEventType.FUND_STOPPED,
    ]


def test_closed_fund_rejects_lifecycle_operations() -> None:
    supervisor = _supervisor()
    supervisor.stop()
    with pytest.raises(FundStateError):
        supervisor.start()
    with pytest.raises(FundStateError):
        supervisor.resume()
    with pytest.raises(FundStateError):
        supervisor.initialize()
    with pytest.raises(FundStateError):
        supervisor.trigger_rebalance()
    supervisor.pause()
    assert supervisor.status == FundStatus.CLOSED


def test_first_tick_rebalances_from_cash_then_settles() -> None:
    ticker = ManualTicker()
    supervisor = _supervisor(ticker=ticker)
    supervisor.start()

    (first,) = ticker.fire()

    assert first.error is None
    assert first.limit_check.passed
    assert first.rebalance_check.needed
    assert first.rebalance.orders_executed == 2
    assert first.rebalance.orders_failed == 0
    assert supervisor.tracker.position("TON").quantity == pytest.approx(800.0, rel=0.01)
    assert supervisor.tracker.position("USDT").quantity == pytest.approx(4_000.0, rel=0.01)
    assert supervisor.tracker.state().cash > 0
    filled = [
        e for e in supervisor.event_bus.recent(EventCategory.EXECUTION) if e.event_type == FundEventType.ORDER_FILLED
    ]
    assert len(filled) == 2

    (second,) = ticker.fire()
    assert not second.rebalance_check.needed
    assert second.rebalance is None
    assert supervisor.tick_count == 2


def test_emergency_stop_pauses_fund_and_stops_ticker() -> None:
    ticker = ManualTicker()
    config = _config(target_allocation={"TON": 1.0})
    supervisor = FundSupervisor(config, ticker=ticker, rng=7)
    supervisor.initialize(positions=[Position.open("TON", 1_000, 5.0)], cash=0.0)
    supervisor.start()
    supervisor.mark_prices({"TON": 3.0})

    outcome = supervisor.tick()

    assert outcome.emergency_stop
    assert not outcome.limit_check.passed
    assert outcome.metrics.current_drawdown == pytest.approx(0.4)
    assert not outcome.rebalance_check.needed
    assert outcome.rebalance is None
    assert supervisor.status == FundStatus.PAUSED
    assert supervisor.pause_reason == EMERGENCY_STOP_REASON
    assert not ticker.running
    assert FundEventType.EMERGENCY_STOP in _lifecycle_types(supervisor)
    risk_types = [e.event_type for e in supervisor.event_bus.recent(EventCategory.RISK)]
    assert FundEventType.RISK_ALERT in risk_types

    supervisor.resume()
    assert supervisor.status == FundStatus.ACTIVE
    assert ticker.running


def test_emergency_stop_follows_the_drift_rebalance() -> None:
    ticker = ManualTicker()
    config = _config(target_allocation={"TON": 0.4, "USDT": 0.4})
    supervisor = FundSupervisor(config, ticker=ticker, rng=7)
    supervisor.initialize(positions=[Position.open("TON", 1_000, 5.0)], cash=0.0)
    supervisor.start()
    supervisor.mark_prices({"TON": 3.0})
    received = []
    supervisor.subscribe(received.append)

    outcome = supervisor.tick()

    assert outcome.rebalance_check.needed
    assert outcome.rebalance.orders_executed == 2
    assert supervisor.tracker.position("USDT") is not None
    assert outcome.emergency_stop
    assert supervisor.status == FundStatus.PAUSED
    seen = [e.event_type for e in received]
    assert seen.index(FundEventType.REBALANCE_COMPLETED) < seen.index(FundEventType.EMERGENCY_STOP)


def test_emergency_stop_can_be_disabled() -> None:
    config = _config(target_allocation={"TON": 1.0})
    config.fund.risk.emergency_stop_enabled = False
    supervisor = FundSupervisor(config, rng=7)
    supervisor.initialize(positions=[Position.open("TON", 1_000, 5.0)], cash=0.0)
    supervisor.start()
    supervisor.mark_prices({"TON": 3.0})

    outcome = supervisor.tick()

    assert not outcome.emergency_stop
    assert not outcome.limit_check.passed
    assert supervisor.status == FundStatus.ACTIVE


def test_component_error_is_reported_and_fund_stays_active(monkeypatch) -> None:
    supervisor = _supervisor()
    supervisor.start()

    def boom(positions, value):
        raise RuntimeError("metrics backend down")

    monkeypatch.setattr(supervisor.risk_engine, "calculate_metrics", boom)
    outcome = supervisor.tick()

    assert outcome.error == "metrics backend down"
    assert supervisor.status == FundStatus.ACTIVE
    error = supervisor.event_bus.recent(EventCategory.LIFECYCLE)[-1]
    assert error.event_type == FundEventType.COMPONENT_ERROR
    assert error.data["error_type"] == "RuntimeError"


def test_manual_rebalance_and_risk_check() -> None:
    supervisor = _supervisor()
    result = supervisor.trigger_rebalance()
    assert result.success
    assert result.orders_executed == 2

    check = supervisor.run_risk_check()
    assert check.passed
    assert check.violations == []
    assert check.metrics.concentration == pytest.approx(0.4, abs=0.01)
    assert supervisor.risk_engine.latest_metrics() == check.metrics


def test_stress_tests_summarise_worst_scenario() -> None:
    supervisor = _supervisor()
    supervisor.trigger_rebalance()

    outcome = supervisor.run_stress_tests()

    assert outcome.scenarios_run == 3
    losses = [r.portfolio_loss for r in outcome.results]
    assert outcome.worst_loss == max(losses)
    assert outcome.worst_scenario in {r.scenario_name for r in outcome.results}
    assert len(outcome.recommendations) == len(set(outcome.recommendations))


def test_stress_tests_on_empty_fund() -> None:
    outcome = _supervisor().run_stress_tests()
    assert outcome.scenarios_run == 3
    assert outcome.worst_loss == 0.0


def test_hedging_check_without_strategies() -> None:
    check = _supervisor().check_hedging()
    assert check.recommendation is None
    assert check.hedge_positions == []


def test_cash_flow_is_not_a_return() -> None:
    supervisor = _supervisor()
    observations = supervisor.tracker.return_observation_count
    assert supervisor.apply_cash_flow(5_000.0)
    assert not supervisor.apply_cash_flow(-1_000_000.0)
    assert supervisor.tracker.state().cash == pytest.approx(15_000.0)
    assert supervisor.tracker.return_observation_count == observations


def test_performance_and_attribution() -> None:
    supervisor = _supervisor()
    supervisor.trigger_rebalance()
    supervisor.mark_prices({"TON": 5.5, "USDT": 1.0})
    assert supervisor.router.reference_price("TON") == 5.5

    report = supervisor.performance(top=1)

    assert report.fund_id == "f1"
    assert [p.asset for p in report.top_positions] == ["TON"]
    assert report.performance.daily_return > 0
    attribution = report.attribution
    assert set(attribution.by_asset) == {"TON", "USDT"}
    assert attribution.by_asset["TON"] > attribution.by_asset["USDT"]
    assert set(attribution.by_strategy) == {"unassigned"}
    assert attribution.by_strategy["unassigned"] == pytest.approx(sum(attribution.by_asset.values()))


def test_attribution_groups_by_strategy() -> None:
    config = _config(target_allocation={"TON": 0.5, "NOT": 0.3})
    supervisor = FundSupervisor(config, rng=7)
    supervisor.initialize(
        positions=[Position.open("TON", 100, 5.0, strategy="core"), Position.open("NOT", 1_000, 0.1)],
        cash=0.0,
    )
    supervisor.mark_prices({"TON": 6.0, "NOT": 0.1})
    attribution = supervisor.attribution()
    assert attribution.by_strategy["core"] == pytest.approx(0.2 * 600.0 / 700.0)
    assert attribution.by_strategy["unassigned"] == pytest.approx(0.0)
    assert _supervisor().attribution().by_asset == {}


def test_configuration_updates_flow_into_components() -> None:
    supervisor = _supervisor()

    supervisor.configure_risk_limits(RiskLimits(max_concentration=0.3))
    assert supervisor.risk_engine.limits.max_concentration == 0.3
    assert supervisor.config.risk.limits.max_concentration == 0.3

    supervisor.configure_portfolio(PortfolioConfig(target_allocation={"NOT": 0.2}))
    assert supervisor.config.portfolio.target_allocation == {"NOT": 0.2}
    assert supervisor.tracker.price_for("NOT") == 5.0

    supervisor.configure_execution(ExecutionConfig(execution_mode="fast"))
    assert supervisor.router.config.execution_mode == "fast"
    assert supervisor.config.execution.execution_mode == "fast"


def test_subscribers_receive_fund_events() -> None:
    supervisor = _supervisor()
    received = []
    supervisor.subscribe(received.append, categories=[EventCategory.LIFECYCLE])
    supervisor.start()
    supervisor.stop("done")
    assert [e.event_type for e in received] == [FundEventType.FUND_STARTED, FundEventType.FUND_STOPPED]
    assert received[-1].data["reason"] == "done"
    assert all(e.fund_id == "f1" for e in received)


def test_thread_ticker_drives_ticks() -> None:
    ticker = ThreadTicker(interval_seconds=0.01, max_ticks=3)
    supervisor = _supervisor(ticker=ticker)
    supervisor.start()

    deadline = time.monotonic() + 5.0
    while ticker.running and time.monotonic() < deadline:
        time.sleep(0.01)

    assert not ticker.running
    assert supervisor.tick_count == 3
    assert supervisor.tracker.position("TON") is not None
    supervisor.stop()
    assert supervisor.status == FundStatus.CLOSED


def test_cash_target_is_held_not_traded() -> None:
    ticker = ManualTicker()
    supervisor = _supervisor(_config(target_allocation={"TON": 0.4, "cash": 0.6}), ticker=ticker)
    supervisor.start()

    (outcome,) = ticker.fire()

    assert outcome.rebalance.orders_executed == 1
    assert {o.asset for o in supervisor.router.orders()} == {"TON"}
    assert supervisor.tracker.position("cash") is None
    assert supervisor.tracker.position("TON").quantity == pytest.approx(800.0, rel=0.01)
    assert supervisor.tracker.total_value() <= 10_000.0
    assert supervisor.tracker.state().cash == pytest.approx(6_000.0, rel=0.01)
    assert [d.asset for d in outcome.rebalance_check.drifts] == ["TON"]

    (second,) = ticker.fire()
    assert not second.rebalance_check.needed


def test_disabled_risk_engine_skips_risk_and_emergency_checks() -> None:
    config = _config(target_allocation={"TON": 1.0})
    config.risk.enabled = False
    supervisor = FundSupervisor(config, rng=7)
    supervisor.initialize(positions=[Position.open("TON", 1_000, 5.0)], cash=0.0)
    supervisor.start()
    supervisor.mark_prices({"TON": 3.0})

    outcome = supervisor.tick()

    assert outcome.metrics is None
    assert outcome.limit_check is None
    assert outcome.rebalance_check is not None
    assert not outcome.emergency_stop
    assert supervisor.status == FundStatus.ACTIVE
    assert supervisor.risk_engine.latest_metrics() is None


def test_disabled_fund_risk_keeps_engine_limits_and_never_stops() -> None:
    config = _config(target_allocation={"TON": 1.0})
    config.fund.risk.enabled = False
    supervisor = FundSupervisor(config, rng=7)
    supervisor.initialize(positions=[Position.open("TON", 1_000, 5.0)], cash=0.0)
    assert supervisor.risk_engine.limits == RiskLimits()
    supervisor.start()
    supervisor.mark_prices({"TON": 3.0})

    outcome = supervisor.tick()

    assert not outcome.limit_check.passed
    assert not outcome.emergency_stop
    assert supervisor.status == FundStatus.ACTIVE


def test_disabled_execution_rebalances_on_paper_fills() -> None:
    config = _config()
    config.execution.enabled = False
    supervisor = _supervisor(config)

    result = supervisor.trigger_rebalance()

    assert result.orders_executed == 2
    assert supervisor.router.orders() == []
    assert supervisor.tracker.position("TON").quantity == pytest.approx(800.0)
    assert supervisor.tracker.position("USDT").quantity == pytest.approx(4_000.0)


def test_disabled_stress_testing_runs_no_scenarios() -> None:
    config = _config()
    config.risk.stress_test.enabled = False
    outcome = _supervisor(config).run_stress_tests()
    assert outcome.scenarios_run == 0
    assert outcome.worst_scenario is None
    assert outcome.results == []
