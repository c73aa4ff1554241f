"""Multi-venue order routing and simulated fill execution."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import datetime
import itertools
import logging
import time

import pandas as pd

from portfolio_risk_system.config import ExecutionConfig
from portfolio_risk_system.events.bus import EventBus, publish_event
from portfolio_risk_system.events.contracts import EventSeverity, FundEvent, FundEventType
from portfolio_risk_system.time_utils import now_utc
from portfolio_risk_system.types import OrderSide

from .costs import (
    apply_slippage_to_price,
    estimate_gas,
    estimate_slippage,
    price_impact,
    simulate_price,
    slice_weights,
    venue_fee,
    venue_liquidity,
)
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
    OrderRequest,
    OrderStatus,
    RouteRequest,
    RouteSegment,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

SOURCE = "execution_router"
PENDING_STATUSES = (OrderStatus.PENDING, OrderStatus.OPEN, OrderStatus.PARTIAL)
# Venue liquidity left below this fraction of the venue depth counts as exhausted.
LIQUIDITY_EPSILON = 1e-9


class ExecutionRouter:
    """
    Routes orders across venues and simulates fills per execution strategy.

    Orders live in an id-addressed arena of frozen snapshots; the router is
    the only writer and replaces a snapshot on every transition. Venue
    liquidity consumed within a cycle caps later fills until `begin_cycle`.
    """

    def __init__(
        self,
        config: ExecutionConfig | None = None,
        fund_id: str = "default",
        event_bus: EventBus | None = None,
    ) -> None:
        self.config = config or ExecutionConfig()
        self.config.validate()
        self.fund_id = fund_id
        self.event_bus = event_bus
        self._orders: dict[str, ExecutionOrder] = {}
        self._ids = itertools.count(1)
        self._consumed: dict[str, float] = {}
        self._reference_prices: dict[str, float] = {}

    # ------------------------------------------------------------------ config

    def configure(self, config: ExecutionConfig) -> None:
        config.validate()
        self.config = config
        self._prune_history()
        self._emit(FundEventType.CONFIG_UPDATED, EventSeverity.INFO, "Execution configuration updated")

    def set_reference_prices(self, prices: Mapping[str, float]) -> None:
        for asset, price in prices.items():
            if price > 0:
                self._reference_prices[asset] = float(price)

    def reference_price(self, asset: str) -> float:
        if asset in self._reference_prices:
            return self._reference_prices[asset]
        return float(self.config.reference_prices.get(asset, self.config.default_reference_price))

    def begin_cycle(self) -> None:
        """Reset venue liquidity consumption at the start of a trading cycle."""
        self._consumed.clear()

    def consumed_liquidity(self, venue: str) -> float:
        return self._consumed.get(venue, 0.0)

    # ------------------------------------------------------------------ orders

    def create_order(self, request: OrderRequest) -> ExecutionOrder:
        if request.quantity <= 0:
            raise ValueError(f"Order quantity must be positive, got {request.quantity}")
        order_id = f"order_{next(self._ids):06d}"
        order = ExecutionOrder(
            order_id=order_id,
            fund_id=self.fund_id,
            order_type=request.order_type,
            side=OrderSide(request.side),
            asset=request.asset,
            quantity=float(request.quantity),
            status=OrderStatus.PENDING,
            execution_strategy=request.execution_strategy or self._default_strategy(request),
            slippage_tolerance=(
                request.slippage_tolerance
                if request.slippage_tolerance is not None
                else self.config.slippage_tolerance
            ),
            priority=request.priority,
            limit_price=request.limit_price,
            metadata=dict(request.metadata),
        )
        self._orders[order_id] = order
        self._emit(
            FundEventType.ORDER_CREATED,
            EventSeverity.INFO,
            f"Order created: {order.side} {order.quantity} {order.asset}",
            {"order_id": order_id, "intent": self._intent(order).to_dict()},
        )
        return order

    def cancel_order(self, order_id: str) -> bool:
        order = self._orders.get(order_id)
        if order is None or order.status in (OrderStatus.FILLED, OrderStatus.CANCELLED):
            return False
        self._orders[order_id] = replace(order, status=OrderStatus.CANCELLED, updated_at=now_utc())
        self._prune_history()
        self._emit(
            FundEventType.ORDER_CANCELLED,
            EventSeverity.INFO,
            f"Order cancelled: {order_id}",
            {"order_id": order_id},
        )
        return True

    def order(self, order_id: str) -> ExecutionOrder | None:
        return self._orders.get(order_id)

    def orders(
        self,
        statuses: Iterable[OrderStatus | str] | None = None,
        side: OrderSide | str | None = None,
        asset: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ExecutionOrder]:
        out = list(self._orders.values())
        if statuses:
            wanted = {OrderStatus(s) for s in statuses}
            out = [o for o in out if o.status in wanted]
        if side is not None:
            out = [o for o in out if o.side == OrderSide(side)]
        if asset is not None:
            out = [o for o in out if o.asset == asset]
        if since is not None:
            out = [o for o in out if o.created_at >= since]
        if until is not None:
            out = [o for o in out if o.created_at <= until]
        return out

    def pending_orders(self) -> list[ExecutionOrder]:
        return self.orders(statuses=PENDING_STATUSES)

    def orders_frame(self) -> pd.DataFrame:
        rows = [o.to_dict() for o in self._orders.values()]
        return pd.DataFrame(rows)

    def order_intent(self, order_id: str) -> OrderIntent | None:
        order = self._orders.get(order_id)
        return self._intent(order) if order else None

    # ----------------------------------------------------------------- routing

    def get_optimal_route(self, request: RouteRequest) -> OptimalRoute:
        side = OrderSide(request.side)
        ref = self.reference_price(request.asset)
        notional = request.quantity * ref
        venues = list(self.config.preferred_venues)

        if notional > self.config.split_threshold and len(venues) > 1:
            chosen = venues
        else:
            chosen = venues[:1]
        percentage = 100.0 / len(chosen)
        routes = [
            RouteSegment(
                venue=venue,
                percentage=percentage,
                expected_price=simulate_price(ref, side, notional * percentage / 100.0),
                liquidity=venue_liquidity(self.config, venue),
                fee=venue_fee(self.config, venue),
            )
            for venue in chosen
        ]
        return OptimalRoute(
            routes=routes,
            expected_price=sum(r.expected_price * r.percentage / 100.0 for r in routes),
            expected_slippage=estimate_slippage(notional, self.config.base_slippage),
            estimated_fees=sum(r.fee * r.percentage / 100.0 for r in routes),
            estimated_gas=estimate_gas(self.config, len(routes)),
            confidence=self.config.route_confidence,
        )

    def estimate_execution(self, request: EstimateRequest) -> ExecutionEstimate:
        """Read-only projection; creates no order and consumes no liquidity."""
        side = OrderSide(request.side)
        ref = self.reference_price(request.asset)
        notional = request.quantity * ref
        impact = price_impact(notional)
        slippage = estimate_slippage(notional, self.config.base_slippage)
        fees = notional * venue_fee(self.config, self.config.preferred_venues[0])
        gas = estimate_gas(self.config, 1)
        expected_price = simulate_price(ref, side, notional)

        warnings: list[str] = []
        if impact > 0.02:
            warnings.append("High price impact detected. Consider splitting the order.")
        if slippage > self.config.slippage_tolerance:
            warnings.append("Expected slippage exceeds tolerance.")

        return ExecutionEstimate(
            expected_price=expected_price,
            price_impact=impact,
            estimated_slippage=slippage,
            estimated_fees=fees,
            estimated_gas=gas,
            estimated_total=request.quantity * expected_price + fees + gas,
            confidence=self.config.estimate_confidence,
            warnings=warnings,
        )

    # --------------------------------------------------------------- execution

    def execute(self, order_id: str) -> ExecutionResult:
        started = time.perf_counter()
        order = self._orders.get(order_id)
        if order is None:
            return ExecutionResult(
                order_id=order_id,
                success=False,
                status=OrderStatus.FAILED,
                filled_quantity=0.0,
                average_price=0.0,
                total_value=0.0,
                fees=0.0,
                execution_time_seconds=time.perf_counter() - started,
                error="Order not found",
            )
        if order.status in TERMINAL_STATUSES:
            return self._result(order, [], started, error=f"Order already {order.status}")

        order = replace(order, status=OrderStatus.OPEN, updated_at=now_utc())
        self._orders[order_id] = order
        quantity = order.remaining

        try:
            route = self.get_optimal_route(
                RouteRequest(
                    side=order.side,
                    asset=order.asset,
                    quantity=quantity,
                    slippage_tolerance=order.slippage_tolerance,
                )
            )
            fills = self._run_strategy(order, route, quantity)
        except Exception as exc:
            logger.exception("Execution of order %s failed", order_id)
            status = OrderStatus.PARTIAL if order.total_filled > 0 else OrderStatus.FAILED
            order = replace(order, status=status, updated_at=now_utc())
            self._orders[order_id] = order
            self._prune_history()
            self._emit(
                FundEventType.ORDER_FAILED,
                EventSeverity.ERROR,
                f"Order execution failed: {order_id}",
                {"order_id": order_id, "error": str(exc)},
            )
            return self._result(order, [], started, error=str(exc))

        order = self._apply_fills(order, fills)
        self._orders[order_id] = order
        self._prune_history()
        if order.status == OrderStatus.FAILED:
            self._emit(
                FundEventType.ORDER_FAILED,
                EventSeverity.WARNING,
                f"Order failed: {order_id}",
                {"order_id": order_id},
            )
        else:
            self._emit(
                FundEventType.ORDER_FILLED,
                EventSeverity.INFO if order.status == OrderStatus.FILLED else EventSeverity.WARNING,
                f"Order {order.status}: {order_id}",
                {
                    "order_id": order_id,
                    "status": str(order.status),
                    "filled": order.total_filled,
                    "average_price": order.average_price,
                    "fees": order.fees,
                },
            )
        if order.status == OrderStatus.PARTIAL:
            logger.info(
                "Order %s partially filled: %.6f of %.6f %s",
                order_id,
                order.total_filled,
                order.quantity,
                order.asset,
            )
        return self._result(order, fills, started)

    def execute_batch(self, order_ids: Iterable[str]) -> BatchExecutionResult:
        """Execute sequentially; each fill sees the liquidity consumed before it."""
        started = time.perf_counter()
        results: list[ExecutionResult] = []
        successful = failed = partial = 0
        for order_id in order_ids:
            result = self.execute(order_id)
            results.append(result)
            if result.success and result.status == OrderStatus.FILLED:
                successful += 1
            elif result.status == OrderStatus.PARTIAL:
                partial += 1
            else:
                failed += 1
        return BatchExecutionResult(
            total_orders=len(results),
            successful=successful,
            failed=failed,
            partially_filled=partial,
            results=results,
            total_value=sum(r.total_value for r in results),
            total_fees=sum(r.fees for r in results),
            execution_time_seconds=time.perf_counter() - started,
        )

    # ---------------------------------------------------------------- internal

    def _default_strategy(self, request: OrderRequest) -> ExecutionStrategy:
        mode = self.config.execution_mode
        if mode == "fast":
            return ExecutionStrategy.IMMEDIATE
        if mode == "stealth":
            notional = request.quantity * self.reference_price(request.asset)
            return ExecutionStrategy.TWAP if notional > self.config.split_threshold else ExecutionStrategy.SMART_ROUTING
        return ExecutionStrategy.SMART_ROUTING

    def _run_strategy(self, order: ExecutionOrder, route: OptimalRoute, quantity: float) -> list[OrderFill]:
        strategy = ExecutionStrategy(order.execution_strategy)
        if strategy == ExecutionStrategy.TWAP:
            slices = [quantity / self.config.twap_slices] * self.config.twap_slices
            legs = [(route.primary, q) for q in slices]
        elif strategy == ExecutionStrategy.VWAP:
            weights = slice_weights(self.config.vwap_volume_profile)
            legs = [(route.primary, quantity * float(w)) for w in weights]
        else:
            legs = [(segment, quantity * segment.percentage / 100.0) for segment in route.routes]

        fills: list[OrderFill] = []
        for segment, leg_quantity in legs:
            fill = self._fill(order, segment, leg_quantity)
            if fill is not None:
                fills.append(fill)
        return fills

    def _fill(self, order: ExecutionOrder, segment: RouteSegment, quantity: float) -> OrderFill | None:
        if quantity <= 0:
            return None
        notional = quantity * self.reference_price(order.asset)
        slippage = estimate_slippage(notional, self.config.base_slippage)
        price = apply_slippage_to_price(segment.expected_price, order.side, slippage)

        if order.limit_price is not None:
            breaches = price > order.limit_price if order.side == OrderSide.BUY else price < order.limit_price
            if breaches:
                logger.debug("Skipping %s slice on %s: %.6f breaches limit %.6f", order.order_id, segment.venue, price, order.limit_price)
                return None

        available = segment.liquidity - self._consumed.get(segment.venue, 0.0)
        if price <= 0 or available <= max(segment.liquidity, 1.0) * LIQUIDITY_EPSILON:
            logger.debug("No liquidity left on %s for order %s", segment.venue, order.order_id)
            return None
        filled = min(quantity, available / price)
        if filled <= 0:
            logger.debug("No liquidity left on %s for order %s", segment.venue, order.order_id)
            return None
        self._consumed[segment.venue] = self._consumed.get(segment.venue, 0.0) + filled * price
        return OrderFill(
            order_id=order.order_id,
            quantity=filled,
            price=price,
            fee=filled * price * segment.fee,
            venue=segment.venue,
        )

    def _apply_fills(self, order: ExecutionOrder, fills: list[OrderFill]) -> ExecutionOrder:
        all_fills = order.fills + tuple(fills)
        total_filled = sum(f.quantity for f in all_fills)
        total_value = sum(f.notional for f in all_fills)
        if total_filled >= order.quantity * self.config.fill_ratio_required:
            status = OrderStatus.FILLED
        elif total_filled > 0:
            status = OrderStatus.PARTIAL
        else:
            status = OrderStatus.FAILED
        stamp = now_utc()
        return replace(
            order,
            fills=all_fills,
            total_filled=total_filled,
            average_price=total_value / total_filled if total_filled > 0 else 0.0,
            fees=sum(f.fee for f in all_fills),
            status=status,
            updated_at=stamp,
            completed_at=stamp if status == OrderStatus.FILLED else None,
        )

    def _result(
        self,
        order: ExecutionOrder,
        fills: list[OrderFill],
        started: float,
        error: str | None = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            order_id=order.order_id,
            success=error is None and order.status == OrderStatus.FILLED,
            status=order.status,
            filled_quantity=order.total_filled,
            average_price=order.average_price,
            total_value=order.total_filled * order.average_price,
            fees=order.fees,
            fills=fills,
            execution_time_seconds=time.perf_counter() - started,
            error=error,
        )

    def _prune_history(self) -> None:
        """Evict the oldest terminal orders beyond `order_history_size`; live orders are never evicted."""
        terminal = [oid for oid, o in self._orders.items() if o.status in TERMINAL_STATUSES]
        excess = len(terminal) - self.config.order_history_size
        for order_id in terminal[: max(excess, 0)]:
            del self._orders[order_id]

    def _intent(self, order: ExecutionOrder) -> OrderIntent:
        return OrderIntent(
            order_id=order.order_id,
            fund_id=order.fund_id,
            asset=order.asset,
            side=order.side,
            quantity=order.quantity,
            strategy=order.execution_strategy,
            limit_price=order.limit_price,
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
