"""Order, route and execution result records."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from portfolio_risk_system.time_utils import now_utc
from portfolio_risk_system.types import OrderSide


class OrderType(StrEnum):
    MARKET = "market"
    LIMIT = "limit"
    TWAP = "twap"
    VWAP = "vwap"
    ICEBERG = "iceberg"


class OrderStatus(StrEnum):
    PENDING = "pending"
    OPEN = "open"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.FAILED})


class ExecutionStrategy(StrEnum):
    IMMEDIATE = "immediate"
    TWAP = "twap"
    VWAP = "vwap"
    SMART_ROUTING = "smart_routing"
    DARK_POOL = "dark_pool"


class OrderPriority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class OrderFill:
    order_id: str
    quantity: float
    price: float
    fee: float
    venue: str
    timestamp: datetime = field(default_factory=now_utc)
    fill_id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def notional(self) -> float:
        return self.quantity * self.price


@dataclass(frozen=True, slots=True)
class ExecutionOrder:
    """Immutable order snapshot; only the router produces new versions."""

    order_id: str
    fund_id: str
    order_type: OrderType
    side: OrderSide
    asset: str
    quantity: float
    status: OrderStatus
    execution_strategy: ExecutionStrategy
    slippage_tolerance: float
    priority: OrderPriority = OrderPriority.NORMAL
    limit_price: float | None = None
    fills: tuple[OrderFill, ...] = ()
    total_filled: float = 0.0
    average_price: float = 0.0
    fees: float = 0.0
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)
    completed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def remaining(self) -> float:
        return max(self.quantity - self.total_filled, 0.0)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "fund_id": self.fund_id,
            "order_type": str(self.order_type),
            "side": str(self.side),
            "asset": self.asset,
            "quantity": self.quantity,
            "status": str(self.status),
            "execution_strategy": str(self.execution_strategy),
            "slippage_tolerance": self.slippage_tolerance,
            "priority": str(self.priority),
            "limit_price": self.limit_price,
            "total_filled": self.total_filled,
            "average_price": self.average_price,
            "fees": self.fees,
            "fill_count": len(self.fills),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(slots=True)
class OrderRequest:
    side: OrderSide
    asset: str
    quantity: float
    order_type: OrderType = OrderType.MARKET
    limit_price: float | None = None
    execution_strategy: ExecutionStrategy | None = None
    slippage_tolerance: float | None = None
    priority: OrderPriority = OrderPriority.NORMAL
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RouteRequest:
    side: OrderSide
    asset: str
    quantity: float
    slippage_tolerance: float | None = None


@dataclass(frozen=True, slots=True)
class RouteSegment:
    venue: str
    percentage: float
    expected_price: float
    liquidity: float
    fee: float


@dataclass(slots=True)
class OptimalRoute:
    routes: list[RouteSegment]
    expected_price: float
    expected_slippage: float
    estimated_fees: float
    estimated_gas: float
    confidence: float

    @property
    def primary(self) -> RouteSegment:
        return self.routes[0]


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one execute call; quantities and costs are the order's running totals."""

    order_id: str
    success: bool
    status: OrderStatus
    filled_quantity: float
    average_price: float
    total_value: float
    fees: float
    fills: list[OrderFill] = field(default_factory=list)
    execution_time_seconds: float = 0.0
    error: str | None = None


@dataclass(slots=True)
class BatchExecutionResult:
    total_orders: int
    successful: int
    failed: int
    partially_filled: int
    results: list[ExecutionResult]
    total_value: float
    total_fees: float
    execution_time_seconds: float


@dataclass(slots=True)
class EstimateRequest:
    side: OrderSide
    asset: str
    quantity: float


@dataclass(slots=True)
class ExecutionEstimate:
    expected_price: float
    price_impact: float
    estimated_slippage: float
    estimated_fees: float
    estimated_gas: float
    estimated_total: float
    confidence: float
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class OrderIntent:
    """Abstract instruction handed to the custody layer for authorization and signing."""

    order_id: str
    fund_id: str
    asset: str
    side: OrderSide
    quantity: float
    strategy: ExecutionStrategy
    limit_price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["side"] = str(self.side)
        out["strategy"] = str(self.strategy)
        return out
