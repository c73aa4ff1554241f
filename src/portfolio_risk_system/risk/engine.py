"""Risk engine: VaR, metric snapshots, limit checks, stress tests and hedging."""

from __future__ import annotations

from collections import deque
from datetime import datetime
import logging
import math

import numpy as np

from portfolio_risk_system.analytics import metrics as stats
from portfolio_risk_system.config import (
    HedgingStrategy,
    RiskEngineConfig,
    RiskLimits,
    with_limits,
)
from portfolio_risk_system.events.bus import EventBus, publish_event
from portfolio_risk_system.events.contracts import (
    EventSeverity,
    FundEvent,
    FundEventType,
    RiskAlert,
    RiskAlertType,
)
from portfolio_risk_system.time_utils import now_utc
from portfolio_risk_system.types import Position, RiskMetricsSnapshot, StressScenario

from .hedging import HedgePosition, HedgingRecommendation, find_hedge, size_hedge
from .limits import (
    LimitCheckResult,
    TransactionImpactResult,
    TransactionRiskRequest,
    evaluate_limits,
    evaluate_loss_limits,
    pro_forma_positions,
)
from .snapshots import RiskSnapshotStore
from .stress import StressTestResult, run_stress_test, scenario_catalog
from .var import DEFAULT_DAILY_VOL, VaRResult, estimate_var

logger = logging.getLogger(__name__)

SOURCE = "risk_engine"


def make_rng(seed: np.random.Generator | int | None) -> np.random.Generator:
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


class RiskEngine:
    """
    Scores portfolio exposure for one fund.

    The engine owns a rolling daily return buffer (capped at the VaR lookback)
    and an optional aligned benchmark buffer used for beta. Every metric
    calculation is recorded as a new version in the snapshot store.
    """

    def __init__(
        self,
        config: RiskEngineConfig | None = None,
        fund_id: str = "default",
        event_bus: EventBus | None = None,
        snapshot_store: RiskSnapshotStore | None = None,
        rng: np.random.Generator | int | None = None,
    ) -> None:
        self.config = config or RiskEngineConfig()
        self.config.validate()
        self.fund_id = fund_id
        self.event_bus = event_bus
        self.snapshots = snapshot_store or RiskSnapshotStore()
        self.rng = make_rng(rng)
        self._returns: deque[float] = deque(maxlen=self.config.var.lookback_days)
        self._benchmark: deque[float | None] = deque(maxlen=self.config.var.lookback_days)
        # oldest alerts fall off once the history is full
        self._alerts: deque[RiskAlert] = deque(maxlen=self.config.alert_history_size)

    # ------------------------------------------------------------------ config

    @property
    def limits(self) -> RiskLimits:
        return self.config.limits

    def configure(self, config: RiskEngineConfig) -> None:
        config.validate()
        self.config = config
        lookback = config.var.lookback_days
        self._returns = deque(self._returns, maxlen=lookback)
        self._benchmark = deque(self._benchmark, maxlen=lookback)
        self._alerts = deque(self._alerts, maxlen=config.alert_history_size)
        self._emit(FundEventType.CONFIG_UPDATED, EventSeverity.INFO, "Risk engine configuration updated")

    def set_limits(self, limits: RiskLimits) -> None:
        limits.validate()
        self.config = with_limits(self.config, limits)
        self._emit(
            FundEventType.CONFIG_UPDATED,
            EventSeverity.INFO,
            "Risk limits updated",
            {"limits": limits.to_dict()},
        )

    # ----------------------------------------------------------------- history

    def add_historical_return(self, daily_return: float, benchmark_return: float | None = None) -> None:
        self._returns.append(float(daily_return))
        self._benchmark.append(None if benchmark_return is None else float(benchmark_return))

    def returns_history(self) -> list[float]:
        return list(self._returns)

    def volatility(self) -> float:
        return stats.sample_volatility(self._returns, default=DEFAULT_DAILY_VOL)

    def _beta(self) -> float:
        pairs = [(r, b) for r, b in zip(self._returns, self._benchmark) if b is not None]
        if len(pairs) < self.config.min_history_for_beta:
            return 1.0
        returns, bench = zip(*pairs)
        value = stats.beta(returns, bench)
        return 1.0 if value is None else value

    # --------------------------------------------------------------------- VaR

    def calculate_var(self, positions: list[Position], portfolio_value: float) -> VaRResult:
        var_cfg = self.config.var
        return estimate_var(
            method=var_cfg.method,
            returns=np.asarray(self._returns, dtype=float),
            portfolio_value=float(portfolio_value),
            confidence=var_cfg.confidence_level,
            time_horizon_days=var_cfg.time_horizon_days,
            simulations=var_cfg.simulations,
            rng=self.rng,
            min_samples=self.config.min_history_for_var,
        )

    # ----------------------------------------------------------------- metrics

    def _compute_metrics(self, positions: list[Position], portfolio_value: float) -> RiskMetricsSnapshot:
        value = float(portfolio_value) if portfolio_value is not None else float("nan")
        if not positions or not math.isfinite(value) or value <= 0:
            return RiskMetricsSnapshot.zeroed()
        if any(not math.isfinite(p.market_value) for p in positions):
            logger.warning("Position set for fund %s holds non-finite market values", self.fund_id)
            return RiskMetricsSnapshot.zeroed()

        var_result = self.calculate_var(positions, value)
        exposure = sum(abs(p.market_value) for p in positions)
        threshold = self.config.liquidity_position_threshold
        liquid_value = sum(p.market_value for p in positions if p.market_value < threshold)
        max_dd, current_dd = stats.drawdown_stats(self._returns)
        rf = self.config.risk_free_annual
        periods = self.config.periods_per_year

        return RiskMetricsSnapshot(
            timestamp=now_utc(),
            var95=var_result.var95 / value,
            var99=var_result.var99 / value,
            cvar=var_result.cvar / value,
            beta=self._beta(),
            sharpe=stats.sharpe_ratio(self._returns, rf, periods, volatility=self.volatility()),
            sortino=stats.sortino_ratio(
                self._returns,
                rf,
                periods,
                downside=stats.downside_deviation(self._returns, default=DEFAULT_DAILY_VOL),
            ),
            max_drawdown=max_dd,
            current_drawdown=current_dd,
            leverage=exposure / value,
            concentration=max(p.weight for p in positions),
            liquidity=liquid_value / value,
        )

    def calculate_metrics(self, positions: list[Position], portfolio_value: float) -> RiskMetricsSnapshot:
        """Score `positions` and record the result as the fund's newest snapshot."""
        snapshot = self._compute_metrics(positions, portfolio_value)
        self.snapshots.put(self.fund_id, snapshot)
        return snapshot

    def latest_metrics(self) -> RiskMetricsSnapshot | None:
        entry = self.snapshots.latest(self.fund_id)
        return entry.snapshot if entry else None

    # ------------------------------------------------------------------ limits

    def check_limits(self, metrics: RiskMetricsSnapshot) -> LimitCheckResult:
        result = evaluate_limits(metrics, self.config.limits, self.config.alerts)
        self._record_alerts(result)
        if not result.passed:
            self._emit(
                FundEventType.RISK_LIMIT_BREACH,
                EventSeverity.WARNING,
                f"Risk limit violations detected: {len(result.violations)}",
                {"violations": [v.limit for v in result.violations]},
            )
        return result

    def check_loss_limits(self) -> LimitCheckResult:
        result = evaluate_loss_limits(list(self._returns), self.config.limits)
        self._record_alerts(result)
        return result

    def check_transaction_impact(self, request: TransactionRiskRequest) -> TransactionImpactResult:
        """Pro-forma limit check of a single trade. Does not record a snapshot."""
        limits = self.config.limits
        current = self._compute_metrics(request.current_positions, request.portfolio_value)
        projected = self._compute_metrics(pro_forma_positions(request), request.portfolio_value)

        violations: list[str] = []
        warnings: list[str] = []
        if projected.var99 > limits.max_var:
            violations.append(
                f"Transaction would breach VaR limit ({projected.var99:.2%} > {limits.max_var:.2%})"
            )
        if projected.concentration > limits.max_concentration:
            violations.append(
                "Transaction would breach concentration limit "
                f"({projected.concentration:.2%} > {limits.max_concentration:.2%})"
            )
        if projected.leverage > limits.max_leverage:
            violations.append(
                f"Transaction would breach leverage limit ({projected.leverage:.2f}x > {limits.max_leverage}x)"
            )
        if limits.max_var > 0 and projected.var99 > limits.max_var * 0.8:
            warnings.append(f"Transaction would bring VaR to {projected.var99 / limits.max_var:.1%} of limit")

        return TransactionImpactResult(
            approved=not violations,
            new_var=projected.var99,
            var_change=projected.var99 - current.var99,
            new_concentration=projected.concentration,
            concentration_change=projected.concentration - current.concentration,
            new_leverage=projected.leverage,
            leverage_change=projected.leverage - current.leverage,
            violations=violations,
            warnings=warnings,
        )

    # ------------------------------------------------------------------ stress

    def stress_scenarios(self) -> list[StressScenario]:
        stress_cfg = self.config.stress_test
        return scenario_catalog(stress_cfg.scenarios, stress_cfg.custom_scenarios)

    def run_stress_test(self, scenario: StressScenario, positions: list[Position]) -> StressTestResult:
        result = run_stress_test(scenario, positions, self.rng)
        self._emit(
            FundEventType.STRESS_TEST_COMPLETED,
            EventSeverity.INFO,
            f"Stress test completed: {scenario.name}",
            {"scenario_id": scenario.scenario_id, "portfolio_loss_percent": result.portfolio_loss_percent},
        )
        return result

    def run_all_stress_tests(self, positions: list[Position]) -> list[StressTestResult]:
        if not self.config.stress_test.enabled:
            logger.debug("Stress testing disabled; skipping %d scenarios", len(self.config.stress_test.scenarios))
            return []
        return [self.run_stress_test(scenario, positions) for scenario in self.stress_scenarios()]

    # ----------------------------------------------------------------- hedging

    def check_hedging_needed(self, metrics: RiskMetricsSnapshot) -> HedgingRecommendation | None:
        return find_hedge(self.config.hedging, metrics, self.volatility())

    def calculate_hedge_positions(self, strategy: HedgingStrategy, portfolio_value: float) -> list[HedgePosition]:
        return size_hedge(strategy, portfolio_value)

    # ------------------------------------------------------------------ alerts

    def alerts(
        self,
        alert_types: list[RiskAlertType | str] | None = None,
        severities: list[EventSeverity | str] | None = None,
        acknowledged: bool | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[RiskAlert]:
        out = list(self._alerts)
        if alert_types:
            wanted_types = {RiskAlertType(t) for t in alert_types}
            out = [a for a in out if a.alert_type in wanted_types]
        if severities:
            wanted_severities = {EventSeverity(s) for s in severities}
            out = [a for a in out if a.severity in wanted_severities]
        if acknowledged is not None:
            out = [a for a in out if a.acknowledged == acknowledged]
        if since is not None:
            out = [a for a in out if a.created_at >= since]
        if until is not None:
            out = [a for a in out if a.created_at <= until]
        return out

    def acknowledge_alert(self, alert_id: str, user_id: str) -> bool:
        for alert in self._alerts:
            if alert.alert_id == alert_id:
                alert.acknowledged = True
                alert.acknowledged_by = user_id
                alert.acknowledged_at = now_utc()
                return True
        return False

    def clear_alerts(self) -> None:
        self._alerts.clear()

    def _record_alerts(self, result: LimitCheckResult) -> None:
        for violation in result.violations:
            self._create_alert(
                violation.alert_type,
                violation.severity,
                violation.limit,
                violation.current_value,
                violation.threshold,
                violation.message,
            )
        for warning in result.warnings:
            if warning.alert_type is not None:
                self._create_alert(
                    warning.alert_type,
                    EventSeverity.WARNING,
                    warning.limit,
                    warning.current_value,
                    warning.threshold,
                    warning.message,
                )

    def _create_alert(
        self,
        alert_type: RiskAlertType,
        severity: EventSeverity,
        metric: str,
        current_value: float,
        threshold: float,
        message: str,
    ) -> RiskAlert:
        alert = RiskAlert(
            fund_id=self.fund_id,
            alert_type=alert_type,
            severity=severity,
            metric=metric,
            current_value=current_value,
            threshold=threshold,
            message=message,
        )
        self._alerts.append(alert)
        self._emit(
            FundEventType.RISK_ALERT,
            EventSeverity.CRITICAL if severity == EventSeverity.CRITICAL else EventSeverity.WARNING,
            message,
            {
                "alert_id": alert.alert_id,
                "alert_type": str(alert_type),
                "metric": metric,
                "current_value": current_value,
                "threshold": threshold,
            },
        )
        return alert

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
