"""Authoritative in-memory portfolio state, drift detection and rebalancing."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable
import logging
import time

import pandas as pd

from portfolio_risk_system.analytics import metrics as stats
from portfolio_risk_system.config import PortfolioConfig, PortfolioConstraints
from portfolio_risk_system.events.bus import EventBus, publish_event
from portfolio_risk_system.events.contracts import EventSeverity, FundEvent, FundEventType
from portfolio_risk_system.time_utils import next_rebalance_time, now_utc
from portfolio_risk_system.types import (
    FillReport,
    OrderSide,
    PortfolioPerformance,
    PortfolioState,
    Position,
    RebalanceOrder,
)

from .optimizer import CASH, OptimalAllocation, optimize_allocation

logger = logging.getLogger(__name__)

SOURCE = "portfolio_tracker"

RebalanceExecutor = Callable[[RebalanceOrder], "FillReport | None"]


@dataclass(slots=True)
class AllocationDrift:
    asset: str
    target_percent: float
    current_percent: float
    drift: float
    drift_percent: float


@dataclass(slots=True)
class RebalanceCheck:
    needed: bool
    total_drift: float
    drifts: list[AllocationDrift] = field(default_factory=list)
    reason: str | None = None
    next_scheduled_rebalance: datetime | None = None


@dataclass(slots=True)
class RebalanceResult:
    success: bool
    orders_executed: int
    orders_failed: int
    total_traded: float
    fees: float
    new_allocation: dict[str, float]
    duration_seconds: float
    errors: list[str] = field(default_factory=list)
    fills: list[FillReport] = field(default_factory=list)


@dataclass(slots=True)
class PortfolioMetrics:
    total_value: float
    cash: float
    invested: float
    unrealized_pnl: float
    realized_pnl: float
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float
    max_drawdown: float
    current_drawdown: float
    volatility: float
    downside_deviation: float


class PortfolioTracker:
    """
    Owns positions, cash and allocation for one fund.

    Total value is always derived as the sum of position market values plus
    cash, so allocation weights (including the synthetic `cash` entry) sum
    to 1 whenever the total is positive. Callers receive copies of state.
    """

    def __init__(
        self,
        config: PortfolioConfig | None = None,
        fund_id: str = "default",
        event_bus: EventBus | None = None,
    ) -> None:
        self.config = config or PortfolioConfig()
        self.config.validate()
        self.fund_id = fund_id
        self.event_bus = event_bus
        self._state = PortfolioState()
        self._returns: deque[tuple[datetime, float]] = deque(maxlen=self.config.return_buffer_size)
        self._asset_returns: dict[str, deque[float]] = {}
        self._reference_prices: dict[str, float] = {}
        self._observations = 0
        self._initial_value: float | None = None
        self._realized_pnl = 0.0

    # ------------------------------------------------------------------ config

    def configure(self, config: PortfolioConfig) -> None:
        config.validate()
        self.config = config
        self._returns = deque(self._returns, maxlen=config.return_buffer_size)
        self._asset_returns = {
            asset: deque(values, maxlen=config.return_buffer_size)
            for asset, values in self._asset_returns.items()
        }
        self._emit(FundEventType.CONFIG_UPDATED, EventSeverity.INFO, "Portfolio configuration updated")

    # ------------------------------------------------------------------- reads

    def state(self) -> PortfolioState:
        return self._state.copy()

    def positions(self) -> list[Position]:
        return [p.copy() for p in self._state.positions.values()]

    def position(self, asset: str) -> Position | None:
        found = self._state.positions.get(asset)
        return found.copy() if found else None

    def allocation(self) -> dict[str, float]:
        return dict(self._state.allocation)

    def performance(self) -> PortfolioPerformance:
        return replace(self._state.performance)

    def total_value(self) -> float:
        return self._state.total_value

    @property
    def return_observation_count(self) -> int:
        """Number of portfolio return observations ever recorded."""
        return self._observations

    def returns_history(self) -> list[float]:
        return [r for _, r in self._returns]

    def returns_since(self, observation_count: int) -> list[float]:
        """Observations recorded after `observation_count`, limited to what the buffer still holds."""
        new = self._observations - int(observation_count)
        if new <= 0:
            return []
        return self.returns_history()[-new:]

    def asset_returns(self) -> dict[str, list[float]]:
        return {asset: list(values) for asset, values in self._asset_returns.items()}

    def price_for(self, asset: str) -> float:
        position = self._state.positions.get(asset)
        if position is not None and position.current_price > 0:
            return position.current_price
        return self._reference_prices.get(asset, self.config.default_price)

    def positions_frame(self) -> pd.DataFrame:
        columns = [
            "asset",
            "quantity",
            "average_cost",
            "current_price",
            "market_value",
            "unrealized_pnl",
            "unrealized_pnl_percent",
            "weight",
            "strategy",
        ]
        rows = [{col: getattr(p, col) for col in columns} for p in self._state.positions.values()]
        return pd.DataFrame(rows, columns=columns)

    # ---------------------------------------------------------------- mutation

    def update_state(
        self,
        *,
        total_value: float | None = None,
        cash: float | None = None,
        positions: Iterable[Position] | Mapping[str, Position] | None = None,
        last_rebalance: datetime | None = None,
        next_rebalance: datetime | None = None,
    ) -> PortfolioState:
        """
        Merge the supplied fields into state.

        Positions and cash are authoritative. A `total_value` supplied without
        `cash` restates the fund value and moves the difference into cash; with
        `cash` it is derived. Any value-touching update records one return.
        """
        previous = self._state.total_value
        if positions is not None:
            items = positions.values() if isinstance(positions, Mapping) else positions
            self._state.positions = {p.asset: p.copy() for p in items}
        if cash is not None:
            self._state.cash = float(cash)
        if total_value is not None:
            if cash is None:
                invested = sum(p.market_value for p in self._state.positions.values())
                self._state.cash = float(total_value) - invested
            elif abs(float(total_value) - (self._invested() + self._state.cash)) > 1e-6:
                logger.debug("Ignoring supplied total value %.2f, derived from positions and cash", total_value)
        if last_rebalance is not None:
            self._state.last_rebalance = last_rebalance
        if next_rebalance is not None:
            self._state.next_rebalance = next_rebalance

        if positions is not None or cash is not None or total_value is not None:
            self._recalculate_allocation()
            self._record_return(previous)
        return self.state()

    def add_position(self, position: Position) -> None:
        self._state.positions[position.asset] = position.copy()
        self._recalculate_allocation()

    def remove_position(self, asset: str) -> bool:
        if self._state.positions.pop(asset, None) is None:
            return False
        self._recalculate_allocation()
        return True

    def update_position_price(self, asset: str, price: float) -> bool:
        """Mark one asset. Records the asset's return; the portfolio return is left to `mark_prices`."""
        if price <= 0:
            return False
        self._record_asset_price(asset, float(price))
        position = self._state.positions.get(asset)
        if position is None:
            return False
        position.mark(price)
        self._recalculate_allocation()
        return True

    def set_reference_prices(self, prices: Mapping[str, float]) -> None:
        """Seed fallback prices for assets not yet held. Records no returns."""
        for asset, price in prices.items():
            if price > 0:
                self._reference_prices[asset] = float(price)

    def mark_prices(self, prices: Mapping[str, float]) -> float | None:
        """Mark many assets at once and record the resulting portfolio return."""
        previous = self._state.total_value
        for asset, price in prices.items():
            if price <= 0:
                continue
            self._record_asset_price(asset, float(price))
            position = self._state.positions.get(asset)
            if position is not None:
                position.mark(price)
        self._recalculate_allocation()
        return self._record_return(previous)

    def apply_fill(self, fill: FillReport) -> None:
        """Fold a realized fill into quantity, average cost and cash. No return is recorded."""
        if fill.quantity <= 0:
            return
        side = OrderSide(fill.side)
        notional = fill.quantity * fill.price
        position = self._state.positions.get(fill.asset)
        if side == OrderSide.BUY:
            self._state.cash -= notional + fill.fees
            if position is None:
                mark = self._reference_prices.get(fill.asset, fill.price)
                opened = Position.open(fill.asset, fill.quantity, fill.price)
                opened.mark(mark)
                self._state.positions[fill.asset] = opened
            else:
                quantity = position.quantity + fill.quantity
                position.average_cost = (
                    position.average_cost * position.quantity + notional
                ) / quantity
                position.quantity = quantity
                position.mark(position.current_price)
        else:
            self._state.cash += notional - fill.fees
            if position is not None:
                sold = min(fill.quantity, position.quantity)
                self._realized_pnl += (fill.price - position.average_cost) * sold - fill.fees
                position.quantity -= sold
                if position.quantity <= 1e-12:
                    del self._state.positions[fill.asset]
                else:
                    position.mark(position.current_price)
        self._recalculate_allocation()

    def apply_cash_flow(self, amount: float) -> bool:
        """Accounting subscription (positive) or redemption (negative); not a performance return."""
        if self._state.cash + amount < 0:
            logger.warning(
                "Rejected cash flow %.2f for fund %s: cash %.2f would go negative",
                amount,
                self.fund_id,
                self._state.cash,
            )
            return False
        self._state.cash += float(amount)
        if self._initial_value is not None:
            self._initial_value += float(amount)
        self._recalculate_allocation()
        self._emit(
            FundEventType.CASH_FLOW_APPLIED,
            EventSeverity.INFO,
            f"Cash flow applied: {amount:,.2f}",
            {"amount": amount, "cash": self._state.cash, "total_value": self._state.total_value},
        )
        return True

    # --------------------------------------------------------------- rebalance

    def check_rebalance_needed(self) -> RebalanceCheck:
        allocation = self._state.allocation
        drifts: list[AllocationDrift] = []
        total_drift = 0.0
        for asset, target in self.config.target_allocation.items():
            # cash is whatever the risky targets leave over, never an order
            if asset == CASH:
                continue
            current = allocation.get(asset, 0.0)
            drift = abs(current - target)
            drifts.append(
                AllocationDrift(
                    asset=asset,
                    target_percent=target,
                    current_percent=current,
                    drift=drift,
                    drift_percent=drift / target if target > 0 else drift,
                )
            )
            total_drift += drift

        threshold = self.config.rebalance_threshold
        needed = total_drift > threshold
        return RebalanceCheck(
            needed=needed,
            total_drift=total_drift,
            drifts=drifts,
            reason=(
                f"Total drift ({total_drift:.2%}) exceeds threshold ({threshold:.2%})" if needed else None
            ),
            next_scheduled_rebalance=self._state.next_rebalance,
        )

    def calculate_rebalance_orders(self) -> list[RebalanceOrder]:
        total = self._state.total_value
        if total <= 0:
            return []
        orders: list[RebalanceOrder] = []
        for asset, target in self.config.target_allocation.items():
            if asset == CASH:
                continue
            current = self._state.allocation.get(asset, 0.0)
            diff = target - current
            if abs(diff) < self.config.min_weight_change:
                continue
            diff_value = total * target - total * current
            orders.append(
                RebalanceOrder(
                    asset=asset,
                    side=OrderSide.BUY if diff > 0 else OrderSide.SELL,
                    quantity=abs(diff_value / self.price_for(asset)),
                    estimated_value=abs(diff_value),
                    current_weight=current,
                    target_weight=target,
                    priority=1 if abs(diff) > self.config.urgent_drift else 2,
                    reason=f"Rebalance from {current:.2%} to {target:.2%}",
                )
            )
        # sorted() is stable, so equal priorities keep target-allocation order.
        return sorted(orders, key=lambda order: order.priority)

    def optimistic_fill(self, order: RebalanceOrder) -> FillReport:
        """Fill at the tracker's current price with the configured fee estimate."""
        price = self.price_for(order.asset)
        return FillReport(
            asset=order.asset,
            side=order.side,
            quantity=order.quantity,
            price=price,
            fees=order.quantity * price * self.config.fee_estimate_rate,
            order_id=order.order_id,
        )

    def execute_rebalance(self, executor: RebalanceExecutor | None = None) -> RebalanceResult:
        """
        Execute every rebalance order in priority order.

        A failing order is counted and reported; it never aborts the rest.
        Rebalance timestamps advance regardless of failures.
        """
        started = time.perf_counter()
        run = executor or self.optimistic_fill
        orders = self.calculate_rebalance_orders()

        if not orders:
            return RebalanceResult(
                success=True,
                orders_executed=0,
                orders_failed=0,
                total_traded=0.0,
                fees=0.0,
                new_allocation=self.allocation(),
                duration_seconds=time.perf_counter() - started,
            )

        self._emit(
            FundEventType.REBALANCE_TRIGGERED,
            EventSeverity.INFO,
            f"Starting rebalance with {len(orders)} orders",
            {"orders": len(orders)},
        )

        executed = 0
        failed = 0
        traded = 0.0
        fees = 0.0
        errors: list[str] = []
        fills: list[FillReport] = []
        for order in orders:
            try:
                report = run(order)
            except Exception as exc:
                logger.warning("Rebalance order %s %s failed: %s", order.side, order.asset, exc)
                failed += 1
                errors.append(f"Failed to execute {order.side} {order.asset}: {exc}")
                continue
            if report is None or report.quantity <= 0 or report.status == "failed":
                failed += 1
                detail = report.error if report is not None and report.error else "nothing filled"
                errors.append(f"Failed to execute {order.side} {order.asset}: {detail}")
                continue
            self.apply_fill(report)
            fills.append(report)
            executed += 1
            traded += report.notional
            fees += report.fees
            if report.status == "partial":
                errors.append(
                    f"Partial fill on {order.side} {order.asset}: {report.quantity:.6f} of {order.quantity:.6f}"
                )

        self._state.last_rebalance = now_utc()
        self._state.next_rebalance = next_rebalance_time(self.config.rebalance_frequency, self._state.last_rebalance)

        result = RebalanceResult(
            success=failed == 0,
            orders_executed=executed,
            orders_failed=failed,
            total_traded=traded,
            fees=fees,
            new_allocation=self.allocation(),
            duration_seconds=time.perf_counter() - started,
            errors=errors,
            fills=fills,
        )
        self._emit(
            FundEventType.REBALANCE_COMPLETED,
            EventSeverity.INFO if result.success else EventSeverity.WARNING,
            f"Rebalance completed: {executed} orders executed, {failed} failed",
            {"orders_executed": executed, "orders_failed": failed, "fees": fees, "total_traded": traded},
        )
        return result

    # ----------------------------------------------------------------- metrics

    def calculate_metrics(self) -> PortfolioMetrics:
        returns = self.returns_history()
        rf = self.config.risk_free_annual
        volatility = stats.sample_volatility(returns)
        downside = stats.downside_deviation(returns)
        perf = self._state.performance
        annualized = (sum(returns) / len(returns) * stats.DAYS_PER_YEAR) if returns else 0.0
        return PortfolioMetrics(
            total_value=self._state.total_value,
            cash=self._state.cash,
            invested=self._invested(),
            unrealized_pnl=sum(p.unrealized_pnl for p in self._state.positions.values()),
            realized_pnl=self._realized_pnl,
            sharpe_ratio=stats.sharpe_ratio(returns, rf, volatility=volatility),
            sortino_ratio=stats.sortino_ratio(returns, rf, downside=downside),
            calmar_ratio=annualized / perf.max_drawdown if perf.max_drawdown else 0.0,
            max_drawdown=perf.max_drawdown,
            current_drawdown=perf.current_drawdown,
            volatility=volatility,
            downside_deviation=downside,
        )

    def optimize_allocation(self, constraints: PortfolioConstraints | None = None) -> OptimalAllocation:
        active = constraints or self.config.constraints
        active.validate()
        return optimize_allocation(
            method=self.config.optimization_method,
            target_allocation=self.config.target_allocation,
            constraints=active,
            asset_returns=self.asset_returns(),
        )

    # ---------------------------------------------------------------- internal

    def _invested(self) -> float:
        return sum(p.market_value for p in self._state.positions.values())

    def _recalculate_allocation(self) -> None:
        total = self._invested() + self._state.cash
        self._state.total_value = total
        if total <= 0:
            self._state.allocation = {}
            for position in self._state.positions.values():
                position.weight = 0.0
            return
        allocation = {CASH: self._state.cash / total}
        for asset, position in self._state.positions.items():
            position.weight = position.market_value / total
            allocation[asset] = position.weight
        self._state.allocation = allocation

    def _record_asset_price(self, asset: str, price: float) -> None:
        previous = self._reference_prices.get(asset)
        if previous is None:
            position = self._state.positions.get(asset)
            previous = position.current_price if position is not None else None
        if previous and previous > 0:
            buffer = self._asset_returns.setdefault(asset, deque(maxlen=self.config.return_buffer_size))
            buffer.append(price / previous - 1.0)
        self._reference_prices[asset] = price

    def _record_return(self, previous_value: float) -> float | None:
        current = self._state.total_value
        if self._initial_value is None and current > 0:
            self._initial_value = current
        observed: float | None = None
        if previous_value > 0:
            observed = (current - previous_value) / previous_value
            self._returns.append((now_utc(), observed))
            self._observations += 1
        self._refresh_performance()
        return observed

    def _refresh_performance(self) -> None:
        returns = self.returns_history()
        max_dd, current_dd = stats.drawdown_stats(returns)
        year = now_utc().year
        total_return = (
            self._state.total_value / self._initial_value - 1.0 if self._initial_value else 0.0
        )
        self._state.performance = PortfolioPerformance(
            total_return=total_return,
            total_return_percent=total_return * 100.0,
            daily_return=returns[-1] if returns else 0.0,
            weekly_return=stats.compounded_return(returns[-7:]),
            monthly_return=stats.compounded_return(returns[-30:]),
            year_to_date_return=stats.compounded_return([r for ts, r in self._returns if ts.year == year]),
            sharpe_ratio=stats.sharpe_ratio(returns),
            sortino_ratio=stats.sortino_ratio(returns),
            max_drawdown=max_dd,
            current_drawdown=current_dd,
            win_rate=stats.win_rate(returns),
            profit_factor=stats.profit_factor(returns),
        )

    def _emit(
        self,
        event_type: FundEventType,
        severity: EventSeverity,
        message: str,
        data: dict | None = None,
    ) -> None:
        publish_event(
            self.event_bus,
            FundEvent(
                event_type=event_type,
                severity=severity,
                source=SOURCE,
                message=message,
                data=data or {},
                fund_id=self.fund_id,
            ),
        )
