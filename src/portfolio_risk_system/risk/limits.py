"""Limit evaluation against risk metric snapshots."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from portfolio_risk_system.analytics.metrics import compounded_return
from portfolio_risk_system.config import AlertConfig, RiskLimits
from portfolio_risk_system.events.contracts import EventSeverity, RiskAlertType
from portfolio_risk_system.types import OrderSide, Position


@dataclass(slots=True)
class LimitViolation:
    limit: str
    current_value: float
    threshold: float
    severity: EventSeverity
    message: str
    alert_type: RiskAlertType


@dataclass(slots=True)
class LimitWarning:
    limit: str
    current_value: float
    threshold: float
    percent_used: float
    message: str
    alert_type: RiskAlertType | None = None


@dataclass(slots=True)
class LimitCheckResult:
    passed: bool
    violations: list[LimitViolation] = field(default_factory=list)
    warnings: list[LimitWarning] = field(default_factory=list)

    @property
    def has_critical(self) -> bool:
        return any(v.severity == EventSeverity.CRITICAL for v in self.violations)

    def merge(self, other: "LimitCheckResult") -> "LimitCheckResult":
        violations = self.violations + other.violations
        return LimitCheckResult(
            passed=not violations,
            violations=violations,
            warnings=self.warnings + other.warnings,
        )


def _used(value: float, limit: float) -> float:
    return value / limit if limit else float("inf")


def evaluate_limits(metrics, limits: RiskLimits, alerts: AlertConfig) -> LimitCheckResult:
    """Compare a RiskMetricsSnapshot against limits and alert thresholds."""
    violations: list[LimitViolation] = []
    warnings: list[LimitWarning] = []

    if metrics.var99 > limits.max_var:
        violations.append(
            LimitViolation(
                limit="max_var",
                current_value=metrics.var99,
                threshold=limits.max_var,
                severity=EventSeverity.CRITICAL,
                message=f"VaR ({metrics.var99:.2%}) exceeds limit ({limits.max_var:.2%})",
                alert_type=RiskAlertType.VAR_BREACH,
            )
        )
    elif metrics.var99 > limits.max_var * alerts.var_breach_percent:
        warnings.append(
            LimitWarning(
                limit="max_var",
                current_value=metrics.var99,
                threshold=limits.max_var,
                percent_used=_used(metrics.var99, limits.max_var),
                message=f"VaR approaching limit ({_used(metrics.var99, limits.max_var):.1%} utilized)",
            )
        )

    if metrics.current_drawdown > limits.max_drawdown:
        violations.append(
            LimitViolation(
                limit="max_drawdown",
                current_value=metrics.current_drawdown,
                threshold=limits.max_drawdown,
                severity=EventSeverity.CRITICAL,
                message=f"Drawdown ({metrics.current_drawdown:.2%}) exceeds limit ({limits.max_drawdown:.2%})",
                alert_type=RiskAlertType.DRAWDOWN_LIMIT,
            )
        )
    elif metrics.current_drawdown > alerts.drawdown_warning:
        warnings.append(
            LimitWarning(
                limit="drawdown_warning",
                current_value=metrics.current_drawdown,
                threshold=alerts.drawdown_warning,
                percent_used=_used(metrics.current_drawdown, limits.max_drawdown),
                message=f"Drawdown warning ({metrics.current_drawdown:.2%})",
                alert_type=RiskAlertType.DRAWDOWN_WARNING,
            )
        )

    if metrics.leverage > limits.max_leverage:
        violations.append(
            LimitViolation(
                limit="max_leverage",
                current_value=metrics.leverage,
                threshold=limits.max_leverage,
                severity=EventSeverity.CRITICAL,
                message=f"Leverage ({metrics.leverage:.2f}x) exceeds limit ({limits.max_leverage}x)",
                alert_type=RiskAlertType.LEVERAGE_WARNING,
            )
        )

    if metrics.concentration > limits.max_concentration:
        violations.append(
            LimitViolation(
                limit="max_concentration",
                current_value=metrics.concentration,
                threshold=limits.max_concentration,
                severity=EventSeverity.WARNING,
                message=(
                    f"Concentration ({metrics.concentration:.2%}) exceeds limit "
                    f"({limits.max_concentration:.2%})"
                ),
                alert_type=RiskAlertType.CONCENTRATION_WARNING,
            )
        )
    elif metrics.concentration > alerts.concentration_warning:
        warnings.append(
            LimitWarning(
                limit="concentration_warning",
                current_value=metrics.concentration,
                threshold=alerts.concentration_warning,
                percent_used=_used(metrics.concentration, limits.max_concentration),
                message=f"Concentration warning ({metrics.concentration:.2%})",
            )
        )

    if metrics.liquidity < limits.min_liquidity:
        violations.append(
            LimitViolation(
                limit="min_liquidity",
                current_value=metrics.liquidity,
                threshold=limits.min_liquidity,
                severity=EventSeverity.WARNING,
                message=f"Liquidity ({metrics.liquidity:.2%}) below minimum ({limits.min_liquidity:.2%})",
                alert_type=RiskAlertType.LIQUIDITY_WARNING,
            )
        )

    return LimitCheckResult(passed=not violations, violations=violations, warnings=warnings)


def evaluate_loss_limits(returns: Sequence[float], limits: RiskLimits) -> LimitCheckResult:
    """Check the latest daily return and the trailing 7-day compounded return."""
    violations: list[LimitViolation] = []
    if len(returns) == 0:
        return LimitCheckResult(passed=True)

    daily = float(returns[-1])
    if daily < -limits.max_daily_loss:
        violations.append(
            LimitViolation(
                limit="max_daily_loss",
                current_value=-daily,
                threshold=limits.max_daily_loss,
                severity=EventSeverity.CRITICAL,
                message=f"Daily loss ({-daily:.2%}) exceeds limit ({limits.max_daily_loss:.2%})",
                alert_type=RiskAlertType.LOSS_LIMIT,
            )
        )

    weekly = compounded_return(list(returns)[-7:])
    if weekly < -limits.max_weekly_loss:
        violations.append(
            LimitViolation(
                limit="max_weekly_loss",
                current_value=-weekly,
                threshold=limits.max_weekly_loss,
                severity=EventSeverity.CRITICAL,
                message=f"Weekly loss ({-weekly:.2%}) exceeds limit ({limits.max_weekly_loss:.2%})",
                alert_type=RiskAlertType.LOSS_LIMIT,
            )
        )
    return LimitCheckResult(passed=not violations, violations=violations)


@dataclass(slots=True)
class TransactionRiskRequest:
    side: OrderSide
    asset: str
    quantity: float
    estimated_price: float
    current_positions: list[Position]
    portfolio_value: float


@dataclass(slots=True)
class TransactionImpactResult:
    approved: bool
    new_var: float
    var_change: float
    new_concentration: float
    concentration_change: float
    new_leverage: float
    leverage_change: float
    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def pro_forma_positions(request: TransactionRiskRequest) -> list[Position]:
    """Positions as they would stand after the requested transaction."""
    side = OrderSide(request.side)
    value = request.portfolio_value
    out: list[Position] = []
    found = False
    for position in request.current_positions:
        if position.asset != request.asset:
            out.append(position.copy())
            continue
        found = True
        delta = request.quantity if side == OrderSide.BUY else -request.quantity
        new_quantity = position.quantity + delta
        if new_quantity <= 0:
            continue
        updated = position.copy()
        updated.quantity = new_quantity
        updated.mark(request.estimated_price)
        updated.weight = updated.market_value / value if value > 0 else 0.0
        out.append(updated)
    if not found and side == OrderSide.BUY:
        opened = Position.open(request.asset, request.quantity, request.estimated_price)
        opened.weight = opened.market_value / value if value > 0 else 0.0
        out.append(opened)
    return out
