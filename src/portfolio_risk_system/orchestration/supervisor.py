"""Fund lifecycle state machine and the per-tick control loop."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, Callable
import logging
import threading

import numpy as np
import pandas as pd

from portfolio_risk_system.config import (
    ExecutionConfig,
    PortfolioConfig,
    RiskEngineConfig,
    RiskLimits,
    SystemConfig,
    with_limits,
)
from portfolio_risk_system.events.bus import EventBus
from portfolio_risk_system.events.contracts import (
    EventCategory,
    EventSeverity,
    FundEvent,
    FundEventType,
)
from portfolio_risk_system.execution.models import OrderRequest, OrderStatus, RouteRequest
from portfolio_risk_system.execution.router import ExecutionRouter
from portfolio_risk_system.portfolio.optimizer import CASH
from portfolio_risk_system.portfolio.tracker import (
    PortfolioTracker,
    RebalanceCheck,
    RebalanceResult,
)
from portfolio_risk_system.risk.engine import RiskEngine, make_rng
from portfolio_risk_system.risk.hedging import HedgePosition, HedgingRecommendation
from portfolio_risk_system.risk.limits import LimitCheckResult
from portfolio_risk_system.risk.stress import StressTestResult
from portfolio_risk_system.time_utils import now_utc
from portfolio_risk_system.types import (
    FillReport,
    PortfolioPerformance,
    Position,
    RebalanceOrder,
    RiskMetricsSnapshot,
)

from .scheduler import ManualTicker, Ticker

logger = logging.getLogger(__name__)

SOURCE = "fund_supervisor"
EMERGENCY_STOP_REASON = "Emergency stop: Critical drawdown breach"


class FundStatus(StrEnum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


class FundStateError(RuntimeError):
    """Operation not allowed in the fund's current lifecycle state."""


@dataclass(slots=True)
class TickOutcome:
    timestamp: datetime
    metrics: RiskMetricsSnapshot | None = None
    limit_check: LimitCheckResult | None = None
    rebalance_check: RebalanceCheck | None = None
    rebalance: RebalanceResult | None = None
    emergency_stop: bool = False
    error: str | None = None


@dataclass(slots=True)
class RiskCheckOutcome:
    passed: bool
    metrics: RiskMetricsSnapshot
    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StressTestOutcome:
    scenarios_run: int
    worst_scenario: str | None
    worst_loss: float
    worst_loss_percent: float
    recommendations: list[str] = field(default_factory=list)
    results: list[StressTestResult] = field(default_factory=list)


@dataclass(slots=True)
class HedgingCheck:
    recommendation: HedgingRecommendation | None
    hedge_positions: list[HedgePosition] = field(default_factory=list)


@dataclass(slots=True)
class PerformanceAttribution:
    by_asset: dict[str, float]
    by_strategy: dict[str, float]


@dataclass(slots=True)
class FundPerformance:
    fund_id: str
    timestamp: datetime
    total_value: float
    cash: float
    performance: PortfolioPerformance
    risk_metrics: RiskMetricsSnapshot | None
    top_positions: list[Position]
    attribution: PerformanceAttribution


def merge_fund_limits(limits: RiskLimits, config: SystemConfig) -> RiskLimits:
    """Fund-level risk settings override the engine's matching limits."""
    fund_risk = config.fund.risk
    return replace(
        limits,
        max_drawdown=fund_risk.max_drawdown,
        max_daily_loss=fund_risk.max_daily_loss,
        max_leverage=fund_risk.max_leverage,
        max_concentration=fund_risk.max_concentration,
    )


class FundSupervisor:
    """
    Owns one fund's lifecycle and drives its risk/rebalance cycle.

    Every public operation runs under a single re-entrant lock, so a tick and
    a manual call never interleave. The ticker is started on `start`/`resume`
    and stopped on `pause`/`stop`; ticker control happens outside the lock so
    a threaded ticker can never wait on a tick that is waiting on the lock.
    """

    def __init__(
        self,
        config: SystemConfig | None = None,
        ticker: Ticker | None = None,
        event_bus: EventBus | None = None,
        rng: np.random.Generator | int | None = None,
        risk_engine: RiskEngine | None = None,
        tracker: PortfolioTracker | None = None,
        router: ExecutionRouter | None = None,
    ) -> None:
        self.config = config or SystemConfig()
        self.config.validate()
        self.fund_id = self.config.fund.fund_id
        self.event_bus = event_bus or EventBus(capacity=self.config.event_buffer_size)
        self.ticker = ticker or ManualTicker()
        self.risk_engine = risk_engine or RiskEngine(
            self.config.risk,
            fund_id=self.fund_id,
            event_bus=self.event_bus,
            rng=make_rng(rng),
        )
        self.tracker = tracker or PortfolioTracker(
            self.config.portfolio,
            fund_id=self.fund_id,
            event_bus=self.event_bus,
        )
        self.router = router or ExecutionRouter(
            self.config.execution,
            fund_id=self.fund_id,
            event_bus=self.event_bus,
        )
        self.status = FundStatus.INITIALIZING
        self.pause_reason: str | None = None
        self._lock = threading.RLock()
        self._forwarded = 0
        self._tick_count = 0

    # --------------------------------------------------------------- lifecycle

    def initialize(
        self,
        positions: Iterable[Position] | None = None,
        cash: float | None = None,
    ) -> None:
        """Load initial holdings and cash, and apply fund-level limits to the risk engine."""
        with self._lock:
            if self.status == FundStatus.CLOSED:
                raise FundStateError(f"Fund {self.fund_id} is closed")
            if self.config.fund.risk.enabled:
                self.configure_risk_limits(merge_fund_limits(self.risk_engine.limits, self.config))
            starting_cash = self.config.fund.initial_capital if cash is None else float(cash)
            self._seed_reference_prices()
            self.tracker.update_state(cash=starting_cash, positions=list(positions or []))
            self._forwarded = self.tracker.return_observation_count
            logger.info(
                "Initialized fund %s with value %.2f (cash %.2f)",
                self.fund_id,
                self.tracker.total_value(),
                starting_cash,
            )

    def start(self) -> None:
        with self._lock:
            if self.status == FundStatus.CLOSED:
                raise FundStateError(f"Cannot start closed fund {self.fund_id}")
            if self.status == FundStatus.ACTIVE:
                return
            self.status = FundStatus.ACTIVE
            self.pause_reason = None
            self._emit(FundEventType.FUND_STARTED, EventSeverity.INFO, f"Fund {self.config.fund.name} started")
        self.ticker.start(self.tick)

    def pause(self, reason: str = "Manual pause") -> None:
        with self._lock:
            if self.status != FundStatus.ACTIVE:
                return
            self._enter_paused(reason)
        self.ticker.stop()

    def resume(self) -> None:
        with self._lock:
            if self.status == FundStatus.CLOSED:
                raise FundStateError(f"Cannot resume closed fund {self.fund_id}")
            if self.status != FundStatus.PAUSED:
                return
            self.status = FundStatus.ACTIVE
            self.pause_reason = None
            self._emit(FundEventType.FUND_RESUMED, EventSeverity.INFO, "Fund resumed")
        self.ticker.start(self.tick)

    def stop(self, reason: str = "Manual stop") -> None:
        with self._lock:
            if self.status == FundStatus.CLOSED:
                return
            self.status = FundStatus.CLOSED
            self._emit(
                FundEventType.FUND_STOPPED,
                EventSeverity.WARNING,
                f"Fund stopped: {reason}",
                {"reason": reason},
            )
        self.ticker.stop()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    # -------------------------------------------------------------------- tick

    def tick(self) -> TickOutcome | None:
        """
        Run one cycle: risk check, drift rebalance, then the emergency stop.

        The emergency pause is evaluated after the drift rebalance.
        Returns None unless the fund is active.
        """
        emergency = False
        with self._lock:
            if self.status != FundStatus.ACTIVE:
                return None
            self._tick_count += 1
            outcome = TickOutcome(timestamp=now_utc())
            try:
                self.router.begin_cycle()
                if self.config.risk.enabled:
                    metrics, check = self._risk_cycle()
                    outcome.metrics = metrics
                    outcome.limit_check = check
                    if not check.passed:
                        self._emit(
                            FundEventType.RISK_ALERT,
                            EventSeverity.WARNING,
                            f"Risk limit violations: {len(check.violations)}",
                            {"violations": [v.message for v in check.violations]},
                        )

                rebalance_check = self.tracker.check_rebalance_needed()
                outcome.rebalance_check = rebalance_check
                if rebalance_check.needed:
                    outcome.rebalance = self._rebalance()

                check = outcome.limit_check
                if check is not None and self._emergency_breach(outcome.metrics, check):
                    emergency = True
                    outcome.emergency_stop = True
                    self._enter_paused(EMERGENCY_STOP_REASON)
                    self._emit(
                        FundEventType.EMERGENCY_STOP,
                        EventSeverity.CRITICAL,
                        EMERGENCY_STOP_REASON,
                        {
                            "current_drawdown": outcome.metrics.current_drawdown,
                            "max_drawdown": self.config.fund.risk.max_drawdown,
                        },
                    )
            except Exception as exc:
                logger.exception("Tick failed for fund %s", self.fund_id)
                self._emit(
                    FundEventType.COMPONENT_ERROR,
                    EventSeverity.ERROR,
                    f"Tick failed: {exc}",
                    {"error": str(exc), "error_type": type(exc).__name__},
                )
                outcome.error = str(exc)
        if emergency:
            self.ticker.stop()
        return outcome

    # ------------------------------------------------------------ manual ops

    def trigger_rebalance(self) -> RebalanceResult:
        with self._lock:
            if self.status == FundStatus.CLOSED:
                raise FundStateError(f"Fund {self.fund_id} is closed")
            self.router.begin_cycle()
            return self._rebalance()

    def run_risk_check(self) -> RiskCheckOutcome:
        with self._lock:
            metrics, check = self._risk_cycle()
            return RiskCheckOutcome(
                passed=check.passed,
                metrics=metrics,
                violations=[v.message for v in check.violations],
                warnings=[w.message for w in check.warnings],
            )

    def run_stress_tests(self) -> StressTestOutcome:
        with self._lock:
            results = self.risk_engine.run_all_stress_tests(self.tracker.positions())
            worst = max(results, key=lambda r: r.portfolio_loss, default=None)
            recommendations = list(dict.fromkeys(rec for r in results for rec in r.recommendations))
            return StressTestOutcome(
                scenarios_run=len(results),
                worst_scenario=worst.scenario_name if worst else None,
                worst_loss=worst.portfolio_loss if worst else 0.0,
                worst_loss_percent=worst.portfolio_loss_percent if worst else 0.0,
                recommendations=recommendations,
                results=results,
            )

    def check_hedging(self) -> HedgingCheck:
        with self._lock:
            metrics = self.risk_engine.latest_metrics() or self.risk_engine.calculate_metrics(
                self.tracker.positions(), self.tracker.total_value()
            )
            recommendation = self.risk_engine.check_hedging_needed(metrics)
            positions: list[HedgePosition] = []
            if recommendation is not None and recommendation.needed and recommendation.strategy is not None:
                positions = self.risk_engine.calculate_hedge_positions(
                    recommendation.strategy, self.tracker.total_value()
                )
            return HedgingCheck(recommendation=recommendation, hedge_positions=positions)

    def apply_cash_flow(self, amount: float) -> bool:
        with self._lock:
            return self.tracker.apply_cash_flow(amount)

    def mark_prices(self, prices: Mapping[str, float]) -> float | None:
        with self._lock:
            observed = self.tracker.mark_prices(prices)
            self.router.set_reference_prices(prices)
            return observed

    def performance(self, top: int = 5) -> FundPerformance:
        with self._lock:
            state = self.tracker.state()
            ranked = sorted(state.positions.values(), key=lambda p: p.market_value, reverse=True)
            return FundPerformance(
                fund_id=self.fund_id,
                timestamp=now_utc(),
                total_value=state.total_value,
                cash=state.cash,
                performance=state.performance,
                risk_metrics=self.risk_engine.latest_metrics(),
                top_positions=ranked[:top],
                attribution=self.attribution(),
            )

    def attribution(self) -> PerformanceAttribution:
        """Contribution per asset is its unrealized P&L percent times its weight."""
        with self._lock:
            frame = self.tracker.positions_frame()
            if frame.empty:
                return PerformanceAttribution(by_asset={}, by_strategy={})
            contribution = frame["unrealized_pnl_percent"] * frame["weight"]
            by_asset = pd.Series(contribution.to_numpy(), index=frame["asset"]).astype(float)
            strategies = frame["strategy"].fillna("unassigned").replace("", "unassigned")
            by_strategy = contribution.groupby(strategies).sum().astype(float)
            return PerformanceAttribution(
                by_asset=by_asset.to_dict(),
                by_strategy=by_strategy.to_dict(),
            )

    def configure_portfolio(self, config: PortfolioConfig) -> None:
        with self._lock:
            self.tracker.configure(config)
            self.config = replace(self.config, portfolio=config)
            self._seed_reference_prices()

    def configure_execution(self, config: ExecutionConfig) -> None:
        with self._lock:
            self.router.configure(config)
            self.config = replace(self.config, execution=config)

    def configure_risk(self, config: RiskEngineConfig) -> None:
        with self._lock:
            self.risk_engine.configure(config)
            self.config = replace(self.config, risk=config)

    def configure_risk_limits(self, limits: RiskLimits) -> None:
        with self._lock:
            self.risk_engine.set_limits(limits)
            self.config = replace(self.config, risk=with_limits(self.config.risk, limits))

    def subscribe(
        self,
        callback: Callable[[FundEvent], Any],
        categories: Iterable[EventCategory | str] | None = None,
    ) -> int:
        return self.event_bus.subscribe(callback, categories)

    # ---------------------------------------------------------------- helpers

    def _risk_cycle(self) -> tuple[RiskMetricsSnapshot, LimitCheckResult]:
        for observed in self.tracker.returns_since(self._forwarded):
            self.risk_engine.add_historical_return(observed)
        self._forwarded = self.tracker.return_observation_count
        metrics = self.risk_engine.calculate_metrics(self.tracker.positions(), self.tracker.total_value())
        check = self.risk_engine.check_limits(metrics).merge(self.risk_engine.check_loss_limits())
        return metrics, check

    def _emergency_breach(self, metrics: RiskMetricsSnapshot, check: LimitCheckResult) -> bool:
        fund_risk = self.config.fund.risk
        if not (fund_risk.enabled and fund_risk.emergency_stop_enabled) or check.passed:
            return False
        return metrics.current_drawdown > fund_risk.max_drawdown * fund_risk.emergency_drawdown_multiplier

    def _seed_reference_prices(self) -> None:
        assets = [a for a in self.config.portfolio.target_allocation if a != CASH]
        self.tracker.set_reference_prices({asset: self.router.reference_price(asset) for asset in assets})

    def _rebalance(self) -> RebalanceResult:
        if not self.config.execution.enabled:
            return self.tracker.execute_rebalance()
        assets = [a for a in self.config.portfolio.target_allocation if a != CASH]
        prices = {asset: self.tracker.price_for(asset) for asset in assets}
        self.router.set_reference_prices(prices)
        return self.tracker.execute_rebalance(self._route_order)

    def _route_order(self, order: RebalanceOrder) -> FillReport:
        route = self.router.get_optimal_route(
            RouteRequest(side=order.side, asset=order.asset, quantity=order.quantity)
        )
        created = self.router.create_order(
            OrderRequest(
                side=order.side,
                asset=order.asset,
                quantity=order.quantity,
                metadata={
                    "rebalance_order_id": order.order_id,
                    "expected_price": route.expected_price,
                    "reason": order.reason,
                },
            )
        )
        result = self.router.execute(created.order_id)
        if result.status == OrderStatus.FILLED:
            status = "filled"
        elif result.status == OrderStatus.PARTIAL:
            status = "partial"
        else:
            status = "failed"
        return FillReport(
            asset=order.asset,
            side=order.side,
            quantity=result.filled_quantity,
            price=result.average_price,
            fees=result.fees,
            status=status,
            order_id=created.order_id,
            error=result.error,
        )

    def _enter_paused(self, reason: str) -> None:
        self.status = FundStatus.PAUSED
        self.pause_reason = reason
        self._emit(
            FundEventType.FUND_PAUSED,
            EventSeverity.WARNING,
            f"Fund paused: {reason}",
            {"reason": reason},
        )

    def _emit(
        self,
        event_type: FundEventType,
        severity: EventSeverity,
        message: str,
        data: dict | None = None,
    ) -> None:
        self.event_bus.publish(
            FundEvent(
                event_type=event_type,
                severity=severity,
                source=SOURCE,
                message=message,
                data=data or {},
                fund_id=self.fund_id,
            )
        )
