from __future__ import annotations

from datetime import timedelta

import pytest

from portfolio_risk_system.analytics import metrics as stats
from portfolio_risk_system.config import PortfolioConfig
from portfolio_risk_system.events import EventBus, EventCategory, FundEventType
from portfolio_risk_system.portfolio import PortfolioTracker
from portfolio_risk_system.types import FillReport, OrderSide, Position, RebalanceOrder


def _tracker(target: dict[str, float] | None = None, **kwargs) -> PortfolioTracker:
    return PortfolioTracker(PortfolioConfig(target_allocation=target or {}), **kwargs)


def test_allocation_sums_to_one_after_state_update() -> None:
    tracker = _tracker()
    tracker.update_state(
        cash=1_000.0,
        positions=[Position.open("A", 10, 50.0), Position.open("B", 20, 10.0)],
    )
    allocation = tracker.allocation()
    assert tracker.total_value() == pytest.approx(1_700.0)
    assert sum(allocation.values()) == pytest.approx(1.0, abs=1e-9)
    assert allocation["cash"] == pytest.approx(1_000.0 / 1_700.0)
    assert tracker.position("A").weight == pytest.approx(500.0 / 1_700.0)


def test_total_value_without_cash_restates_cash() -> None:
    tracker = _tracker()
    tracker.update_state(positions=[Position.open("A", 100, 5.0)], cash=0.0)
    state = tracker.update_state(total_value=800.0)
    assert state.cash == pytest.approx(300.0)
    assert state.total_value == pytest.approx(800.0)
    assert sum(state.allocation.values()) == pytest.approx(1.0)


def test_zero_drift_needs_no_rebalance() -> None:
    tracker = _tracker({"A": 0.5, "B": 0.5})
    tracker.update_state(cash=0.0, positions=[Position.open("A", 50, 10.0), Position.open("B", 500, 1.0)])
    check = tracker.check_rebalance_needed()
    assert not check.needed
    assert check.total_drift == pytest.approx(0.0)
    assert check.reason is None


def test_drift_above_threshold_needs_rebalance() -> None:
    tracker = _tracker({"A": 0.6})
    tracker.update_state(cash=600.0, positions=[Position.open("A", 400, 1.0)])
    check = tracker.check_rebalance_needed()
    assert check.needed
    assert check.total_drift == pytest.approx(0.2)
    assert check.drifts[0].drift_percent == pytest.approx(0.2 / 0.6)


def test_rebalance_orders_buy_the_shortfall() -> None:
    tracker = _tracker({"A": 0.6})
    tracker.update_state(cash=600.0, positions=[Position.open("A", 400, 1.0)])
    orders = tracker.calculate_rebalance_orders()
    assert len(orders) == 1
    assert orders[0].side == OrderSide.BUY
    assert orders[0].quantity == pytest.approx(200.0)
    assert orders[0].priority == 1


def test_rebalance_orders_sorted_by_priority() -> None:
    tracker = _tracker({"A": 0.3, "B": 0.52})
    tracker.update_state(cash=200.0, positions=[Position.open("A", 300, 1.0), Position.open("B", 500, 1.0)])
    orders = tracker.calculate_rebalance_orders()
    assert [(o.asset, o.priority) for o in orders] == [("B", 2)]

    tracker = _tracker({"A": 0.52, "B": 0.1})
    tracker.update_state(cash=200.0, positions=[Position.open("A", 500, 1.0), Position.open("B", 300, 1.0)])
    orders = tracker.calculate_rebalance_orders()
    assert [(o.asset, o.side, o.priority) for o in orders] == [("B", OrderSide.SELL, 1), ("A", OrderSide.BUY, 2)]


def test_empty_rebalance_succeeds() -> None:
    tracker = _tracker()
    result = tracker.execute_rebalance()
    assert result.success
    assert result.orders_executed == 0
    assert result.orders_failed == 0
    assert result.duration_seconds >= 0


def test_optimistic_rebalance_moves_cash_into_target() -> None:
    bus = EventBus()
    tracker = _tracker({"A": 0.6}, event_bus=bus)
    tracker.update_state(cash=600.0, positions=[Position.open("A", 400, 1.0)])

    result = tracker.execute_rebalance()

    assert result.success
    assert result.orders_executed == 1
    assert result.total_traded == pytest.approx(200.0)
    assert result.fees == pytest.approx(0.6)
    assert tracker.position("A").quantity == pytest.approx(600.0)
    assert tracker.state().cash == pytest.approx(399.4)
    assert sum(result.new_allocation.values()) == pytest.approx(1.0)
    state = tracker.state()
    assert state.next_rebalance - state.last_rebalance == timedelta(days=1)
    types = [e.event_type for e in bus.recent(EventCategory.PORTFOLIO)]
    assert types == [FundEventType.REBALANCE_TRIGGERED, FundEventType.REBALANCE_COMPLETED]


def test_failing_orders_do_not_abort_the_batch() -> None:
    tracker = _tracker({"A": 0.3, "B": 0.3})
    tracker.update_state(cash=1_000.0)

    def executor(order: RebalanceOrder) -> FillReport | None:
        if order.asset == "A":
            raise RuntimeError("venue offline")
        return FillReport(asset=order.asset, side=order.side, quantity=order.quantity / 2, price=1.0, status="partial")

    result = tracker.execute_rebalance(executor)

    assert not result.success
    assert result.orders_executed == 1
    assert result.orders_failed == 1
    assert any("venue offline" in e for e in result.errors)
    assert any(e.startswith("Partial fill") for e in result.errors)
    assert tracker.position("B").quantity == pytest.approx(150.0)
    assert tracker.position("A") is None


def test_executor_returning_nothing_counts_as_failure() -> None:
    tracker = _tracker({"A": 0.5})
    tracker.update_state(cash=1_000.0)
    result = tracker.execute_rebalance(lambda order: None)
    assert result.orders_failed == 1
    assert result.errors == ["Failed to execute buy A: nothing filled"]


def test_value_updates_record_returns_but_cash_flows_do_not() -> None:
    bus = EventBus()
    tracker = _tracker(event_bus=bus)
    tracker.update_state(cash=1_000.0)
    assert tracker.return_observation_count == 0

    tracker.update_state(cash=1_100.0)
    assert tracker.returns_history() == [pytest.approx(0.1)]
    assert tracker.performance().daily_return == pytest.approx(0.1)
    assert tracker.performance().total_return == pytest.approx(0.1)

    assert tracker.apply_cash_flow(500.0)
    assert not tracker.apply_cash_flow(-10_000.0)
    assert tracker.return_observation_count == 1
    assert tracker.state().cash == pytest.approx(1_600.0)
    assert bus.recent(EventCategory.PORTFOLIO)[-1].event_type == FundEventType.CASH_FLOW_APPLIED


def test_returns_since_reports_only_new_observations() -> None:
    tracker = _tracker()
    tracker.update_state(cash=100.0)
    tracker.update_state(cash=110.0)
    seen = tracker.return_observation_count
    tracker.update_state(cash=99.0)
    assert tracker.returns_since(seen) == [pytest.approx(-0.1)]
    assert tracker.returns_since(tracker.return_observation_count) == []


def test_mark_prices_records_portfolio_and_asset_returns() -> None:
    tracker = _tracker()
    tracker.update_state(cash=0.0, positions=[Position.open("A", 100, 10.0)])
    observed = tracker.mark_prices({"A": 11.0, "B": 2.0})
    assert observed == pytest.approx(0.1)
    assert tracker.asset_returns()["A"] == [pytest.approx(0.1)]
    assert tracker.price_for("B") == 2.0
    assert tracker.price_for("Z") == 1.0


def test_update_position_price_handles_unknown_assets() -> None:
    tracker = _tracker()
    tracker.add_position(Position.open("A", 10, 10.0))
    assert tracker.update_position_price("A", 12.0)
    assert tracker.position("A").market_value == pytest.approx(120.0)
    assert not tracker.update_position_price("B", 3.0)
    assert not tracker.update_position_price("A", 0.0)
    assert tracker.return_observation_count == 0
    assert not tracker.remove_position("B")
    assert tracker.remove_position("A")


def test_sell_fill_realizes_pnl() -> None:
    tracker = _tracker()
    tracker.update_state(cash=0.0, positions=[Position.open("A", 10, 10.0)])
    tracker.update_position_price("A", 12.0)
    tracker.apply_fill(FillReport(asset="A", side=OrderSide.SELL, quantity=5, price=12.0))
    assert tracker.position("A").quantity == pytest.approx(5.0)
    assert tracker.state().cash == pytest.approx(60.0)
    assert tracker.calculate_metrics().realized_pnl == pytest.approx(10.0)


def test_buy_fill_averages_cost() -> None:
    tracker = _tracker()
    tracker.update_state(cash=1_000.0, positions=[Position.open("A", 10, 10.0)])
    tracker.apply_fill(FillReport(asset="A", side=OrderSide.BUY, quantity=10, price=20.0, fees=1.0))
    position = tracker.position("A")
    assert position.quantity == pytest.approx(20.0)
    assert position.average_cost == pytest.approx(15.0)
    assert tracker.state().cash == pytest.approx(799.0)


def test_state_reads_are_copies() -> None:
    tracker = _tracker()
    tracker.update_state(cash=0.0, positions=[Position.open("A", 10, 10.0)])
    state = tracker.state()
    state.positions["A"].quantity = 999
    state.cash = 1e9
    assert tracker.position("A").quantity == 10
    assert tracker.state().cash == 0.0


def test_positions_frame_and_optimizer() -> None:
    tracker = PortfolioTracker(PortfolioConfig(target_allocation={"A": 0.5, "B": 0.3, "C": 0.2}))
    tracker.update_state(cash=100.0, positions=[Position.open("A", 10, 10.0, strategy="core")])
    frame = tracker.positions_frame()
    assert list(frame["asset"]) == ["A"]
    assert frame.loc[0, "strategy"] == "core"

    optimal = tracker.optimize_allocation()
    assert optimal.allocations["A"] == pytest.approx(0.25)
    assert optimal.allocations["cash"] == pytest.approx(0.25)
    assert sum(optimal.allocations.values()) == pytest.approx(1.0)


def test_cash_target_is_never_ordered() -> None:
    tracker = _tracker({"A": 0.5, "cash": 0.5})
    tracker.update_state(cash=1_000.0)

    check = tracker.check_rebalance_needed()
    assert [d.asset for d in check.drifts] == ["A"]
    assert check.total_drift == pytest.approx(0.5)

    orders = tracker.calculate_rebalance_orders()
    assert [(o.asset, o.side) for o in orders] == [("A", OrderSide.BUY)]
    assert orders[0].estimated_value == pytest.approx(500.0)

    result = tracker.execute_rebalance()
    assert result.orders_executed == 1
    assert tracker.position("cash") is None
    assert tracker.total_value() <= 1_000.0
    assert tracker.state().cash == pytest.approx(500.0 - result.fees)


def test_metrics_use_configured_risk_free_rate() -> None:
    def run(rate: float) -> PortfolioTracker:
        tracker = PortfolioTracker(PortfolioConfig(risk_free_annual=rate))
        for cash in (1_000.0, 1_100.0, 1_045.0, 1_066.0):
            tracker.update_state(cash=cash)
        return tracker

    free = run(0.0)
    costly = run(0.5)
    returns = free.returns_history()
    assert free.calculate_metrics().sharpe_ratio == pytest.approx(stats.sharpe_ratio(returns, 0.0))
    assert costly.calculate_metrics().sharpe_ratio == pytest.approx(stats.sharpe_ratio(returns, 0.5))
    assert costly.calculate_metrics().sharpe_ratio < free.calculate_metrics().sharpe_ratio
