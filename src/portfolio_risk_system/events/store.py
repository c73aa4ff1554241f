"""Durable exactly-once audit trail for fund events."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any
import hashlib
import json
import sqlite3

from .bus import EventBus
from .contracts import EventCategory, EventSeverity, FundEvent

KEY_FIELDS = ("event_id", "order_id", "alert_id")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS fund_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    category TEXT NOT NULL,
    event_key TEXT NOT NULL,
    fund_id TEXT,
    event_type TEXT,
    severity TEXT,
    payload_json TEXT NOT NULL,
    recorded_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(category, event_key)
);
CREATE INDEX IF NOT EXISTS idx_fund_events_category_seq ON fund_events(category, seq);
CREATE INDEX IF NOT EXISTS idx_fund_events_fund_seq ON fund_events(fund_id, seq);
"""


def stable_event_key(payload: dict[str, Any], key_fields: Iterable[str] = KEY_FIELDS) -> str:
    """First identifier present in `payload`, else a sha256 of its canonical JSON."""
    for name in key_fields:
        value = payload.get(name)
        if value not in (None, "", []):
            return f"{name}:{value}"
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return "hash:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _row_to_record(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "seq": row["seq"],
        "category": row["category"],
        "event_key": row["event_key"],
        "fund_id": row["fund_id"],
        "payload": json.loads(row["payload_json"]),
        "recorded_at": row["recorded_at"],
    }


@dataclass(slots=True)
class SQLiteEventStore:
    """
    Append-only SQLite log of fund events.

    Each `(category, event_key)` pair is stored at most once, so replaying a
    bus or re-recording after a crash never duplicates the audit trail.
    Readers page through a category with the monotonically increasing `seq`.
    """

    db_path: str | Path

    def __post_init__(self) -> None:
        self.db_path = str(self.db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._session() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            with conn:
                yield conn

    def record_event(
        self,
        topic: str,
        event_key: str,
        payload: dict[str, Any],
        fund_id: str | None = None,
    ) -> bool:
        """Store `payload` under `topic`. False when the key was already recorded."""
        with self._session() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO fund_events"
                "(category, event_key, fund_id, event_type, severity, payload_json) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    str(topic),
                    event_key,
                    fund_id,
                    payload.get("event_type"),
                    payload.get("severity"),
                    json.dumps(payload, default=str, sort_keys=True),
                ),
            )
            return cursor.rowcount == 1

    def record(self, event: FundEvent) -> bool:
        payload = event.to_dict()
        return self.record_event(
            topic=payload["category"],
            event_key=stable_event_key(payload),
            payload=payload,
            fund_id=event.fund_id,
        )

    def fetch_since(
        self,
        topic: EventCategory | str,
        last_id: int = 0,
        limit: int = 1000,
        fund_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Records of one category with `seq > last_id`, oldest first."""
        query = "SELECT * FROM fund_events WHERE category = ? AND seq > ?"
        params: list[Any] = [str(topic), int(last_id)]
        if fund_id is not None:
            query += " AND fund_id = ?"
            params.append(fund_id)
        query += " ORDER BY seq ASC LIMIT ?"
        params.append(int(limit))
        with self._session() as conn:
            return [_row_to_record(row) for row in conn.execute(query, params).fetchall()]

    def load_events(self, topic: EventCategory | str, last_id: int = 0, limit: int = 1000) -> list[FundEvent]:
        return [FundEvent.from_dict(record["payload"]) for record in self.fetch_since(topic, last_id, limit)]

    def events_for_fund(
        self,
        fund_id: str,
        severities: Iterable[EventSeverity | str] | None = None,
    ) -> list[FundEvent]:
        """Every stored event of one fund across categories, optionally filtered by severity."""
        query = "SELECT payload_json FROM fund_events WHERE fund_id = ?"
        params: list[Any] = [fund_id]
        wanted = [str(EventSeverity(s)) for s in severities] if severities else []
        if wanted:
            query += f" AND severity IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        query += " ORDER BY seq ASC"
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [FundEvent.from_dict(json.loads(row["payload_json"])) for row in rows]

    def count(self, topic: EventCategory | str | None = None) -> int:
        with self._session() as conn:
            if topic is None:
                return conn.execute("SELECT COUNT(*) FROM fund_events").fetchone()[0]
            return conn.execute("SELECT COUNT(*) FROM fund_events WHERE category = ?", (str(topic),)).fetchone()[0]

    def attach(self, bus: EventBus) -> int:
        """Record every event published on `bus`."""
        return bus.subscribe(self.record)
