"""System configuration objects and helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from portfolio_risk_system.types import StressScenario

VAR_METHODS = ("historical", "parametric", "monte_carlo")
REBALANCE_FREQUENCIES = ("hourly", "daily", "weekly", "monthly")
OPTIMIZATION_METHODS = ("mean_variance", "risk_parity", "black_litterman", "equal_weight")
EXECUTION_MODES = ("fast", "optimal", "stealth")
HEDGE_METRICS = ("var", "beta", "correlation", "volatility", "drawdown")


class ConfigurationError(ValueError):
    """Raised when a configuration struct is rejected at configure time."""


def _require_non_negative(owner: str, **values: float) -> None:
    for name, value in values.items():
        if value is None or float(value) < 0:
            raise ConfigurationError(f"{owner}.{name} must be non-negative, got {value!r}")


def _require_positive(owner: str, **values: float) -> None:
    for name, value in values.items():
        if value is None or float(value) <= 0:
            raise ConfigurationError(f"{owner}.{name} must be positive, got {value!r}")


def _require_fraction(owner: str, **values: float) -> None:
    for name, value in values.items():
        if value is None or not 0.0 <= float(value) <= 1.0:
            raise ConfigurationError(f"{owner}.{name} must be within [0, 1], got {value!r}")


@dataclass(slots=True)
class VaRConfig:
    confidence_level: float = 0.99
    time_horizon_days: int = 1
    method: str = "historical"
    lookback_days: int = 252
    simulations: int = 10_000

    def validate(self) -> None:
        _require_fraction("var", confidence_level=self.confidence_level)
        _require_positive(
            "var",
            time_horizon_days=self.time_horizon_days,
            lookback_days=self.lookback_days,
            simulations=self.simulations,
        )


@dataclass(frozen=True, slots=True)
class RiskLimits:
    """Hard risk limits. Replaced wholesale through `RiskEngine.set_limits`."""

    max_drawdown: float = 0.15
    max_daily_loss: float = 0.05
    max_weekly_loss: float = 0.10
    max_leverage: float = 2.0
    max_concentration: float = 0.25
    max_var: float = 0.10
    min_liquidity: float = 0.10

    def validate(self) -> None:
        _require_non_negative(
            "limits",
            max_drawdown=self.max_drawdown,
            max_daily_loss=self.max_daily_loss,
            max_weekly_loss=self.max_weekly_loss,
            max_leverage=self.max_leverage,
            max_concentration=self.max_concentration,
            max_var=self.max_var,
            min_liquidity=self.min_liquidity,
        )

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "RiskLimits":
        defaults = RiskLimits()
        return RiskLimits(
            **{
                name: float(payload.get(name, getattr(defaults, name)))
                for name in defaults.to_dict()
            }
        )


@dataclass(slots=True)
class AlertConfig:
    var_breach_percent: float = 0.80
    drawdown_warning: float = 0.10
    concentration_warning: float = 0.20

    def validate(self) -> None:
        _require_fraction(
            "alerts",
            var_breach_percent=self.var_breach_percent,
            drawdown_warning=self.drawdown_warning,
            concentration_warning=self.concentration_warning,
        )


@dataclass(slots=True)
class StressTestConfig:
    """`enabled=False` makes `RiskEngine.run_all_stress_tests` a no-op; single scenarios still run."""

    enabled: bool = True
    scenarios: list[str] = field(
        default_factory=lambda: ["financial_crisis_2008", "covid_crash_2020", "terra_luna_2022"]
    )
    custom_scenarios: list[StressScenario] = field(default_factory=list)


@dataclass(slots=True)
class HedgingTrigger:
    metric: str
    threshold: float
    operator: str = "above"

    def validate(self) -> None:
        if self.metric not in HEDGE_METRICS:
            raise ConfigurationError(f"Unknown hedging trigger metric: {self.metric}")
        if self.operator not in ("above", "below"):
            raise ConfigurationError(f"Unknown hedging trigger operator: {self.operator}")


@dataclass(slots=True)
class HedgingStrategy:
    strategy_id: str
    hedge_type: str
    trigger: HedgingTrigger
    instruments: list[str] = field(default_factory=list)
    target_exposure: float = 0.0


@dataclass(slots=True)
class HedgingConfig:
    enabled: bool = False
    strategies: list[HedgingStrategy] = field(default_factory=list)
    max_hedge_cost: float = 0.01

    def validate(self) -> None:
        _require_non_negative("hedging", max_hedge_cost=self.max_hedge_cost)
        for strategy in self.strategies:
            strategy.trigger.validate()


@dataclass(slots=True)
class RiskEngineConfig:
    # When disabled the supervisor skips the per-tick risk check and emergency stop.
    enabled: bool = True
    var: VaRConfig = field(default_factory=VaRConfig)
    limits: RiskLimits = field(default_factory=RiskLimits)
    stress_test: StressTestConfig = field(default_factory=StressTestConfig)
    hedging: HedgingConfig = field(default_factory=HedgingConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    risk_free_annual: float = 0.05
    periods_per_year: int = 365
    liquidity_position_threshold: float = 100_000.0
    min_history_for_var: int = 30
    min_history_for_beta: int = 20
    alert_history_size: int = 1_000

    def validate(self) -> None:
        self.var.validate()
        self.limits.validate()
        self.hedging.validate()
        self.alerts.validate()
        _require_non_negative(
            "risk",
            risk_free_annual=self.risk_free_annual,
            liquidity_position_threshold=self.liquidity_position_threshold,
        )
        _require_positive(
            "risk",
            periods_per_year=self.periods_per_year,
            min_history_for_var=self.min_history_for_var,
            min_history_for_beta=self.min_history_for_beta,
            alert_history_size=self.alert_history_size,
        )


@dataclass(slots=True)
class PortfolioConstraints:
    max_single_asset: float = 0.25

    def validate(self) -> None:
        _require_fraction("constraints", max_single_asset=self.max_single_asset)


@dataclass(slots=True)
class PortfolioConfig:
    target_allocation: dict[str, float] = field(default_factory=dict)
    rebalance_threshold: float = 0.05
    rebalance_frequency: str = "daily"
    constraints: PortfolioConstraints = field(default_factory=PortfolioConstraints)
    optimization_method: str = "mean_variance"
    fee_estimate_rate: float = 0.003
    min_weight_change: float = 0.001
    urgent_drift: float = 0.05
    return_buffer_size: int = 365
    default_price: float = 1.0
    risk_free_annual: float = 0.05

    def validate(self) -> None:
        for asset, weight in self.target_allocation.items():
            if float(weight) < 0:
                raise ConfigurationError(f"Target weight for {asset} must be non-negative, got {weight!r}")
        if self.target_allocation and sum(self.target_allocation.values()) > 1.0 + 1e-9:
            raise ConfigurationError("Target allocation weights must not sum above 1")
        if self.rebalance_frequency not in REBALANCE_FREQUENCIES:
            raise ConfigurationError(f"Unknown rebalance frequency: {self.rebalance_frequency}")
        if self.optimization_method not in OPTIMIZATION_METHODS:
            raise ConfigurationError(f"Unknown optimization method: {self.optimization_method}")
        _require_non_negative(
            "portfolio",
            rebalance_threshold=self.rebalance_threshold,
            fee_estimate_rate=self.fee_estimate_rate,
            min_weight_change=self.min_weight_change,
            urgent_drift=self.urgent_drift,
            risk_free_annual=self.risk_free_annual,
        )
        _require_positive(
            "portfolio",
            return_buffer_size=self.return_buffer_size,
            default_price=self.default_price,
        )
        self.constraints.validate()


@dataclass(slots=True)
class ExecutionConfig:
    # When disabled the supervisor rebalances with the tracker's paper fills instead of the router.
    enabled: bool = True
    execution_mode: str = "optimal"
    slippage_tolerance: float = 0.005
    preferred_venues: list[str] = field(default_factory=lambda: ["dedust", "stonfi"])
    split_threshold: float = 10_000.0
    twap_slices: int = 5
    # Relative traded volume per slice; a flat profile makes VWAP identical to TWAP.
    vwap_volume_profile: list[float] = field(default_factory=lambda: [0.15, 0.25, 0.30, 0.20, 0.10])
    base_slippage: float = 0.001
    default_reference_price: float = 5.0
    reference_prices: dict[str, float] = field(default_factory=dict)
    venue_fees: dict[str, float] = field(
        default_factory=lambda: {"dedust": 0.003, "stonfi": 0.003, "megaton": 0.0025}
    )
    venue_liquidity: dict[str, float] = field(
        default_factory=lambda: {"dedust": 5_000_000.0, "stonfi": 3_000_000.0, "megaton": 1_000_000.0}
    )
    default_venue_fee: float = 0.003
    default_venue_liquidity: float = 500_000.0
    gas_per_route: float = 0.05
    fill_ratio_required: float = 0.99
    route_confidence: float = 0.85
    estimate_confidence: float = 0.80
    # Terminal orders beyond this count are evicted oldest first.
    order_history_size: int = 10_000

    def validate(self) -> None:
        if self.execution_mode not in EXECUTION_MODES:
            raise ConfigurationError(f"Unknown execution mode: {self.execution_mode}")
        if not self.preferred_venues:
            raise ConfigurationError("execution.preferred_venues must name at least one venue")
        if not self.vwap_volume_profile or any(w < 0 for w in self.vwap_volume_profile):
            raise ConfigurationError("execution.vwap_volume_profile must hold non-negative weights")
        if sum(self.vwap_volume_profile) <= 0:
            raise ConfigurationError("execution.vwap_volume_profile must not be all zero")
        _require_non_negative(
            "execution",
            slippage_tolerance=self.slippage_tolerance,
            split_threshold=self.split_threshold,
            base_slippage=self.base_slippage,
            default_venue_fee=self.default_venue_fee,
            gas_per_route=self.gas_per_route,
        )
        _require_positive(
            "execution",
            twap_slices=self.twap_slices,
            default_reference_price=self.default_reference_price,
            default_venue_liquidity=self.default_venue_liquidity,
            order_history_size=self.order_history_size,
        )
        _require_fraction("execution", fill_ratio_required=self.fill_ratio_required)
        for asset, price in self.reference_prices.items():
            _require_positive("execution.reference_prices", **{asset: price})
        for venue, fee in self.venue_fees.items():
            _require_non_negative("execution.venue_fees", **{venue: fee})
        for venue, liquidity in self.venue_liquidity.items():
            _require_non_negative("execution.venue_liquidity", **{venue: liquidity})


@dataclass(slots=True)
class FundRiskConfig:
    # When disabled the fund-level limits are not overlaid and emergency stop never fires.
    enabled: bool = True
    max_drawdown: float = 0.15
    max_daily_loss: float = 0.05
    max_leverage: float = 2.0
    max_concentration: float = 0.25
    emergency_stop_enabled: bool = True
    emergency_drawdown_multiplier: float = 1.5

    def validate(self) -> None:
        _require_non_negative(
            "fund.risk",
            max_drawdown=self.max_drawdown,
            max_daily_loss=self.max_daily_loss,
            max_leverage=self.max_leverage,
            max_concentration=self.max_concentration,
        )
        _require_positive("fund.risk", emergency_drawdown_multiplier=self.emergency_drawdown_multiplier)


@dataclass(slots=True)
class FundConfig:
    fund_id: str = "fund-001"
    name: str = "Core Fund"
    fund_type: str = "multi_strategy"
    initial_capital: float = 1_000_000.0
    currency: str = "USD"
    tick_interval_seconds: float = 60.0
    risk: FundRiskConfig = field(default_factory=FundRiskConfig)

    def validate(self) -> None:
        if not self.fund_id:
            raise ConfigurationError("fund.fund_id must not be empty")
        _require_non_negative("fund", initial_capital=self.initial_capital)
        _require_positive("fund", tick_interval_seconds=self.tick_interval_seconds)
        self.risk.validate()


@dataclass(slots=True)
class SystemConfig:
    fund: FundConfig = field(default_factory=FundConfig)
    risk: RiskEngineConfig = field(default_factory=RiskEngineConfig)
    portfolio: PortfolioConfig = field(default_factory=PortfolioConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    event_buffer_size: int = 1_000

    def validate(self) -> None:
        self.fund.validate()
        self.risk.validate()
        self.portfolio.validate()
        self.execution.validate()
        _require_positive("system", event_buffer_size=self.event_buffer_size)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "SystemConfig":
        fund_payload = dict(payload.get("fund", {}))
        fund_risk = FundRiskConfig(**fund_payload.pop("risk", {}))
        return SystemConfig(
            fund=FundConfig(risk=fund_risk, **fund_payload),
            risk=risk_config_from_dict(payload.get("risk", {})),
            portfolio=portfolio_config_from_dict(payload.get("portfolio", {})),
            execution=ExecutionConfig(**payload.get("execution", {})),
            event_buffer_size=int(payload.get("event_buffer_size", 1_000)),
        )


def risk_config_from_dict(payload: dict[str, Any]) -> RiskEngineConfig:
    data = dict(payload)
    stress_payload = dict(data.pop("stress_test", {}))
    custom = [StressScenario(**item) for item in stress_payload.pop("custom_scenarios", [])]
    hedging_payload = dict(data.pop("hedging", {}))
    strategies = []
    for item in hedging_payload.pop("strategies", []):
        item = dict(item)
        trigger = HedgingTrigger(**item.pop("trigger"))
        strategies.append(HedgingStrategy(trigger=trigger, **item))
    return RiskEngineConfig(
        var=VaRConfig(**data.pop("var", {})),
        limits=RiskLimits.from_dict(data.pop("limits", {})),
        stress_test=StressTestConfig(custom_scenarios=custom, **stress_payload),
        hedging=HedgingConfig(strategies=strategies, **hedging_payload),
        alerts=AlertConfig(**data.pop("alerts", {})),
        **data,
    )


def portfolio_config_from_dict(payload: dict[str, Any]) -> PortfolioConfig:
    data = dict(payload)
    constraints = PortfolioConstraints(**data.pop("constraints", {}))
    return PortfolioConfig(constraints=constraints, **data)


def with_limits(config: RiskEngineConfig, limits: RiskLimits) -> RiskEngineConfig:
    """Return a copy of `config` carrying a replacement limit set."""
    return replace(config, limits=limits)


def load_config(path: str | Path) -> SystemConfig:
    """Load system configuration from YAML."""
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    config = SystemConfig.from_dict(payload)
    config.validate()
    return config


def save_config(config: SystemConfig, path: str | Path) -> None:
    """Persist system configuration to YAML."""
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config.to_dict(), handle, sort_keys=False)
