"""Order routing and execution package."""

from .costs import apply_slippage_to_price, estimate_slippage, price_impact
from .models import (
    BatchExecutionResult,
    EstimateRequest,
    ExecutionEstimate,
    ExecutionOrder,
    ExecutionResult,
    ExecutionStrategy,
    OptimalRoute,
    OrderFill,
    OrderIntent,
    OrderPriority,
    OrderRequest,
    OrderStatus,
    OrderType,
    RouteRequest,
    RouteSegment,
)
from .router import ExecutionRouter

__all__ = [
    "BatchExecutionResult",
    "EstimateRequest",
    "ExecutionEstimate",
    "ExecutionOrder",
    "ExecutionResult",
    "ExecutionRouter",
    "ExecutionStrategy",
    "OptimalRoute",
    "OrderFill",
    "OrderIntent",
    "OrderPriority",
    "OrderRequest",
    "OrderStatus",
    "OrderType",
    "RouteRequest",
    "RouteSegment",
    "apply_slippage_to_price",
    "estimate_slippage",
    "price_impact",
]
