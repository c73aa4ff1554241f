"""Contracts for the fund event stream and risk alert records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from portfolio_risk_system.time_utils import now_utc


class EventSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class EventCategory(StrEnum):
    LIFECYCLE = "lifecycle"
    RISK = "risk"
    PORTFOLIO = "portfolio"
    EXECUTION = "execution"


class FundEventType(StrEnum):
    FUND_STARTED = "fund_started"
    FUND_PAUSED = "fund_paused"
    FUND_RESUMED = "fund_resumed"
    FUND_STOPPED = "fund_stopped"
    CONFIG_UPDATED = "config_updated"
    REBALANCE_TRIGGERED = "rebalance_triggered"
    REBALANCE_COMPLETED = "rebalance_completed"
    ORDER_CREATED = "order_created"
    ORDER_FILLED = "order_filled"
    ORDER_FAILED = "order_failed"
    ORDER_CANCELLED = "order_cancelled"
    RISK_ALERT = "risk_alert"
    RISK_LIMIT_BREACH = "risk_limit_breach"
    STRESS_TEST_COMPLETED = "stress_test_completed"
    CASH_FLOW_APPLIED = "cash_flow_applied"
    COMPONENT_ERROR = "component_error"
    EMERGENCY_STOP = "emergency_stop"


_DEFAULT_CATEGORY: dict[FundEventType, EventCategory] = {
    FundEventType.FUND_STARTED: EventCategory.LIFECYCLE,
    FundEventType.FUND_PAUSED: EventCategory.LIFECYCLE,
    FundEventType.FUND_RESUMED: EventCategory.LIFECYCLE,
    FundEventType.FUND_STOPPED: EventCategory.LIFECYCLE,
    FundEventType.CONFIG_UPDATED: EventCategory.LIFECYCLE,
    FundEventType.COMPONENT_ERROR: EventCategory.LIFECYCLE,
    FundEventType.EMERGENCY_STOP: EventCategory.LIFECYCLE,
    FundEventType.REBALANCE_TRIGGERED: EventCategory.PORTFOLIO,
    FundEventType.REBALANCE_COMPLETED: EventCategory.PORTFOLIO,
    FundEventType.CASH_FLOW_APPLIED: EventCategory.PORTFOLIO,
    FundEventType.ORDER_CREATED: EventCategory.EXECUTION,
    FundEventType.ORDER_FILLED: EventCategory.EXECUTION,
    FundEventType.ORDER_FAILED: EventCategory.EXECUTION,
    FundEventType.ORDER_CANCELLED: EventCategory.EXECUTION,
    FundEventType.RISK_ALERT: EventCategory.RISK,
    FundEventType.RISK_LIMIT_BREACH: EventCategory.RISK,
    FundEventType.STRESS_TEST_COMPLETED: EventCategory.RISK,
}


def category_for(event_type: FundEventType) -> EventCategory:
    return _DEFAULT_CATEGORY[FundEventType(event_type)]


@dataclass(slots=True)
class FundEvent:
    """Structured event emitted on state transitions, violations, rebalances and order outcomes."""

    event_type: FundEventType
    severity: EventSeverity
    source: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    fund_id: str = "default"
    category: EventCategory | None = None
    timestamp: datetime = field(default_factory=now_utc)
    event_id: str = field(default_factory=lambda: uuid4().hex)

    def __post_init__(self) -> None:
        self.event_type = FundEventType(self.event_type)
        self.severity = EventSeverity(self.severity)
        if self.category is None:
            self.category = category_for(self.event_type)
        else:
            self.category = EventCategory(self.category)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "fund_id": self.fund_id,
            "event_type": str(self.event_type),
            "category": str(self.category),
            "severity": str(self.severity),
            "source": self.source,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "FundEvent":
        data = payload.copy()
        data["timestamp"] = datetime.fromisoformat(str(data["timestamp"]))
        return FundEvent(**data)


class RiskAlertType(StrEnum):
    VAR_BREACH = "var_breach"
    DRAWDOWN_WARNING = "drawdown_warning"
    DRAWDOWN_LIMIT = "drawdown_limit"
    CONCENTRATION_WARNING = "concentration_warning"
    LEVERAGE_WARNING = "leverage_warning"
    LIQUIDITY_WARNING = "liquidity_warning"
    LOSS_LIMIT = "loss_limit"


@dataclass(slots=True)
class RiskAlert:
    """Alert record produced per limit breach, retained until cleared."""

    fund_id: str
    alert_type: RiskAlertType
    severity: EventSeverity
    metric: str
    current_value: float
    threshold: float
    message: str
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    created_at: datetime = field(default_factory=now_utc)
    alert_id: str = field(default_factory=lambda: uuid4().hex)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "fund_id": self.fund_id,
            "alert_type": str(self.alert_type),
            "severity": str(self.severity),
            "metric": self.metric,
            "current_value": self.current_value,
            "threshold": self.threshold,
            "message": self.message,
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }
