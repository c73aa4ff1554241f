"""Bounded publish/subscribe channel for fund events."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable
import itertools
import logging
import threading

from .contracts import EventCategory, FundEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[FundEvent], None]


@dataclass(slots=True)
class Subscription:
    subscription_id: int
    callback: EventCallback
    categories: frozenset[EventCategory]


class EventBus:
    """
    Per-category bounded channel with synchronous best-effort delivery.

    Each category keeps at most `capacity` recent events; the oldest event is
    dropped when a channel is full. A subscriber that raises is logged and
    counted and the remaining subscribers still receive the event.
    """

    def __init__(self, capacity: int = 1_000) -> None:
        if capacity <= 0:
            raise ValueError("EventBus capacity must be positive")
        self.capacity = int(capacity)
        self._channels: dict[EventCategory, deque[FundEvent]] = {
            category: deque(maxlen=self.capacity) for category in EventCategory
        }
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.delivery_failures = 0
        self.dropped = 0

    def subscribe(
        self,
        callback: EventCallback,
        categories: Iterable[EventCategory | str] | None = None,
    ) -> int:
        wanted = frozenset(EventCategory(c) for c in categories) if categories else frozenset(EventCategory)
        with self._lock:
            subscription_id = next(self._ids)
            self._subscriptions[subscription_id] = Subscription(subscription_id, callback, wanted)
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def publish(self, event: FundEvent) -> None:
        category = EventCategory(event.category)
        with self._lock:
            channel = self._channels[category]
            if len(channel) == channel.maxlen:
                self.dropped += 1
            channel.append(event)
            targets = [s for s in self._subscriptions.values() if category in s.categories]
        for subscription in targets:
            try:
                subscription.callback(event)
            except Exception:
                self.delivery_failures += 1
                logger.exception(
                    "Event subscriber %s failed on %s event %s",
                    subscription.subscription_id,
                    event.event_type,
                    event.event_id,
                )

    def recent(self, category: EventCategory | str, limit: int | None = None) -> list[FundEvent]:
        with self._lock:
            events = list(self._channels[EventCategory(category)])
        if limit is not None:
            events = events[-max(0, int(limit)):] if limit > 0 else []
        return events

    def drain(self, category: EventCategory | str) -> list[FundEvent]:
        with self._lock:
            channel = self._channels[EventCategory(category)]
            out = list(channel)
            channel.clear()
        return out

    def size(self, category: EventCategory | str) -> int:
        with self._lock:
            return len(self._channels[EventCategory(category)])


def publish_event(bus: EventBus | None, event: FundEvent) -> None:
    """Helper for components that may run without a bus attached."""
    if bus is not None:
        bus.publish(event)
