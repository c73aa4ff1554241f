"""Fund event stream, alert routing and audit storage."""

from .alerting import (
    AlertRouter,
    AlertSink,
    ConsoleAlertSink,
    FileAlertSink,
    WebhookAlertSink,
)
from .bus import EventBus, Subscription, publish_event
from .contracts import (
    EventCategory,
    EventSeverity,
    FundEvent,
    FundEventType,
    RiskAlert,
    RiskAlertType,
    category_for,
)
from .store import SQLiteEventStore, stable_event_key

__all__ = [
    "AlertRouter",
    "AlertSink",
    "ConsoleAlertSink",
    "EventBus",
    "EventCategory",
    "EventSeverity",
    "FileAlertSink",
    "FundEvent",
    "FundEventType",
    "RiskAlert",
    "RiskAlertType",
    "SQLiteEventStore",
    "Subscription",
    "WebhookAlertSink",
    "category_for",
    "publish_event",
    "stable_event_key",
]
