"""Core domain datatypes."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from portfolio_risk_system.time_utils import now_utc


class OrderSide(StrEnum):
    BUY = "buy"
    SELL = "sell"


@dataclass(slots=True)
class Position:
    """One holding. `market_value` always equals `quantity * current_price`."""

    asset: str
    quantity: float
    average_cost: float
    current_price: float
    market_value: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    weight: float = 0.0
    opened_at: datetime = field(default_factory=now_utc)
    position_id: str = field(default_factory=lambda: uuid4().hex)
    strategy: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.mark(self.current_price)

    @staticmethod
    def open(asset: str, quantity: float, price: float, strategy: str | None = None) -> "Position":
        return Position(
            asset=asset,
            quantity=float(quantity),
            average_cost=float(price),
            current_price=float(price),
            strategy=strategy,
        )

    def mark(self, price: float) -> None:
        self.current_price = float(price)
        self.market_value = self.quantity * self.current_price
        cost_basis = self.quantity * self.average_cost
        self.unrealized_pnl = self.market_value - cost_basis
        self.unrealized_pnl_percent = self.unrealized_pnl / cost_basis if cost_basis else 0.0

    def copy(self) -> "Position":
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["opened_at"] = self.opened_at.isoformat()
        return out


@dataclass(slots=True)
class PortfolioPerformance:
    total_return: float = 0.0
    total_return_percent: float = 0.0
    daily_return: float = 0.0
    weekly_return: float = 0.0
    monthly_return: float = 0.0
    year_to_date_return: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    max_drawdown: float = 0.0
    current_drawdown: float = 0.0
    win_rate: float = 0.0
    profit_factor: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(slots=True)
class PortfolioState:
    total_value: float = 0.0
    cash: float = 0.0
    positions: dict[str, Position] = field(default_factory=dict)
    allocation: dict[str, float] = field(default_factory=dict)
    performance: PortfolioPerformance = field(default_factory=PortfolioPerformance)
    last_rebalance: datetime | None = None
    next_rebalance: datetime | None = None

    def copy(self) -> "PortfolioState":
        return PortfolioState(
            total_value=self.total_value,
            cash=self.cash,
            positions={asset: pos.copy() for asset, pos in self.positions.items()},
            allocation=dict(self.allocation),
            performance=replace(self.performance),
            last_rebalance=self.last_rebalance,
            next_rebalance=self.next_rebalance,
        )


@dataclass(frozen=True, slots=True)
class RiskMetricsSnapshot:
    """Point-in-time risk metrics. VaR figures are fractions of portfolio value."""

    timestamp: datetime
    var95: float
    var99: float
    cvar: float
    beta: float
    sharpe: float
    sortino: float
    max_drawdown: float
    current_drawdown: float
    leverage: float
    concentration: float
    liquidity: float

    @staticmethod
    def zeroed(timestamp: datetime | None = None) -> "RiskMetricsSnapshot":
        return RiskMetricsSnapshot(
            timestamp=timestamp or now_utc(),
            var95=0.0,
            var99=0.0,
            cvar=0.0,
            beta=0.0,
            sharpe=0.0,
            sortino=0.0,
            max_drawdown=0.0,
            current_drawdown=0.0,
            leverage=0.0,
            concentration=0.0,
            liquidity=1.0,
        )

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["timestamp"] = self.timestamp.isoformat()
        return out


@dataclass(frozen=True, slots=True)
class StressScenario:
    scenario_id: str
    name: str
    description: str
    market_move: float
    volatility_spike: float = 1.0
    correlation_breakdown: bool = False
    liquidity_crisis: bool = False
    duration_days: int = 1


@dataclass(slots=True)
class RebalanceOrder:
    asset: str
    side: OrderSide
    quantity: float
    estimated_value: float
    current_weight: float
    target_weight: float
    priority: int
    reason: str
    order_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass(slots=True)
class FillReport:
    """Realized outcome of one rebalance order, as reported by an executor."""

    asset: str
    side: OrderSide
    quantity: float
    price: float
    fees: float = 0.0
    status: str = "filled"
    order_id: str | None = None
    error: str | None = None

    @property
    def notional(self) -> float:
        return self.quantity * self.price
