"""Alert routing from the fund event stream to operator channels."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, TextIO
import json
import logging
import sys
import urllib.request

from .bus import EventBus
from .contracts import EventCategory, EventSeverity, FundEvent

logger = logging.getLogger(__name__)

SEVERITY_ORDER = (EventSeverity.INFO, EventSeverity.WARNING, EventSeverity.ERROR, EventSeverity.CRITICAL)


def severity_at_least(severity: EventSeverity | str, floor: EventSeverity | str) -> bool:
    return SEVERITY_ORDER.index(EventSeverity(severity)) >= SEVERITY_ORDER.index(EventSeverity(floor))


class AlertSink(ABC):
    """Abstract sink for fund events."""

    @abstractmethod
    def send(self, event: FundEvent) -> None:
        """Deliver one event."""


class ConsoleAlertSink(AlertSink):
    """One line per event on a text stream (stdout by default)."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream

    def send(self, event: FundEvent) -> None:
        stream = self.stream or sys.stdout
        stream.write(
            f"[{event.timestamp.isoformat()}] [{str(event.severity).upper()}] "
            f"{event.fund_id} {event.event_type}: {event.message}\n"
        )


class FileAlertSink(AlertSink):
    """Append events as JSONL for audit and incident review."""

    def __init__(self, output_path: str | Path) -> None:
        self.output_path = Path(output_path)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

    def send(self, event: FundEvent) -> None:
        with self.output_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event.to_dict(), default=str, sort_keys=True) + "\n")


class WebhookAlertSink(AlertSink):
    """POST each event as JSON to a compliance or paging endpoint."""

    def __init__(self, webhook_url: str, timeout_seconds: float = 5.0, headers: dict[str, str] | None = None) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.headers = {"Content-Type": "application/json", **(headers or {})}

    def send(self, event: FundEvent) -> None:
        body = json.dumps({"fund_id": event.fund_id, "event": event.to_dict()}, default=str).encode("utf-8")
        request = urllib.request.Request(self.webhook_url, data=body, headers=self.headers, method="POST")
        with urllib.request.urlopen(request, timeout=self.timeout_seconds):
            pass


@dataclass(slots=True)
class AlertRouter:
    """
    Fans events out to sinks.

    `default_sinks` get every event at or above `min_severity`;
    `severity_sinks` and `category_sinks` are additive. A sink that raises is
    logged and counted in `failures`; the remaining sinks still receive the event.
    """

    default_sinks: list[AlertSink] = field(default_factory=list)
    severity_sinks: dict[EventSeverity, list[AlertSink]] = field(default_factory=dict)
    category_sinks: dict[EventCategory, list[AlertSink]] = field(default_factory=dict)
    min_severity: EventSeverity = EventSeverity.INFO
    failures: int = 0

    def sinks_for(self, event: FundEvent) -> list[AlertSink]:
        if not severity_at_least(event.severity, self.min_severity):
            return []
        sinks = list(self.default_sinks)
        sinks.extend(self.severity_sinks.get(EventSeverity(event.severity), []))
        if event.category is not None:
            sinks.extend(self.category_sinks.get(EventCategory(event.category), []))
        return sinks

    def route(self, event: FundEvent) -> int:
        """Deliver `event`; returns how many sinks accepted it."""
        delivered = 0
        for sink in self.sinks_for(event):
            try:
                sink.send(event)
            except Exception as exc:
                self.failures += 1
                logger.warning("Alert sink %s failed on %s: %s", type(sink).__name__, event.event_type, exc)
                continue
            delivered += 1
        return delivered

    def attach(self, bus: EventBus, categories: Iterable[EventCategory | str] | None = None) -> int:
        """Subscribe this router to a bus; returns the subscription id."""
        return bus.subscribe(self.route, categories=categories)

    @staticmethod
    def with_console_and_file(
        file_path: str | Path,
        min_severity: EventSeverity = EventSeverity.INFO,
    ) -> "AlertRouter":
        return AlertRouter(default_sinks=[ConsoleAlertSink(), FileAlertSink(file_path)], min_severity=min_severity)
