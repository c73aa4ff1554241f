"""Tick scheduling with explicit cancellation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable
import logging
import threading

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Any]


class CancellationToken:
    """One-shot cancellation flag that sleepers can wait on."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to `timeout` seconds; True when cancelled."""
        return self._event.wait(timeout)


class Ticker(ABC):
    """Drives a periodic callback until stopped."""

    @abstractmethod
    def start(self, callback: TickCallback) -> None:
        """Begin invoking `callback` on this ticker's cadence."""

    @abstractmethod
    def stop(self) -> None:
        """Stop invoking the callback. Safe to call when not running."""

    @property
    @abstractmethod
    def running(self) -> bool:
        """Whether the ticker is currently scheduled."""


class ManualTicker(Ticker):
    """Ticker driven explicitly by `fire`; used by tests and step-wise simulations."""

    def __init__(self) -> None:
        self._callback: TickCallback | None = None

    def start(self, callback: TickCallback) -> None:
        self._callback = callback

    def stop(self) -> None:
        self._callback = None

    @property
    def running(self) -> bool:
        return self._callback is not None

    def fire(self, times: int = 1) -> list[Any]:
        """Invoke the callback up to `times` times, stopping early if the ticker is stopped."""
        results = []
        for _ in range(max(0, int(times))):
            callback = self._callback
            if callback is None:
                break
            results.append(callback())
        return results


class ThreadTicker(Ticker):
    """Invoke the callback every `interval_seconds` on a daemon thread."""

    def __init__(self, interval_seconds: float, max_ticks: int | None = None) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = float(interval_seconds)
        self.max_ticks = max_ticks
        self.ticks = 0
        self._token: CancellationToken | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._token is not None and not self._token.cancelled

    def start(self, callback: TickCallback) -> None:
        if self.running:
            return
        token = CancellationToken()
        self._token = token
        self._thread = threading.Thread(
            target=self._run,
            args=(callback, token),
            name="fund-ticker",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        token, thread = self._token, self._thread
        if token is None:
            return
        token.cancel()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval_seconds)

    def _run(self, callback: TickCallback, token: CancellationToken) -> None:
        while not token.wait(self.interval_seconds):
            try:
                callback()
            except Exception:
                logger.exception("Tick callback raised")
            self.ticks += 1
            if self.max_ticks is not None and self.ticks >= self.max_ticks:
                token.cancel()
