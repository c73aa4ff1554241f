"""Versioned store of risk metric snapshots keyed by fund id."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import threading

from portfolio_risk_system.types import RiskMetricsSnapshot


@dataclass(frozen=True, slots=True)
class VersionedSnapshot:
    fund_id: str
    version: int
    snapshot: RiskMetricsSnapshot


class RiskSnapshotStore:
    """
    Append-only per-fund snapshot history.

    Snapshots are frozen, so readers always get a value they cannot mutate.
    Versions increase monotonically per fund; only the newest `history_size`
    entries are retained.
    """

    def __init__(self, history_size: int = 100) -> None:
        self.history_size = max(1, int(history_size))
        self._history: dict[str, deque[VersionedSnapshot]] = defaultdict(
            lambda: deque(maxlen=self.history_size)
        )
        self._versions: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def put(self, fund_id: str, snapshot: RiskMetricsSnapshot) -> VersionedSnapshot:
        with self._lock:
            self._versions[fund_id] += 1
            entry = VersionedSnapshot(fund_id=fund_id, version=self._versions[fund_id], snapshot=snapshot)
            self._history[fund_id].append(entry)
            return entry

    def latest(self, fund_id: str) -> VersionedSnapshot | None:
        with self._lock:
            history = self._history.get(fund_id)
            return history[-1] if history else None

    def history(self, fund_id: str, limit: int | None = None) -> list[VersionedSnapshot]:
        with self._lock:
            entries = list(self._history.get(fund_id, ()))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def version(self, fund_id: str) -> int:
        with self._lock:
            return self._versions.get(fund_id, 0)
