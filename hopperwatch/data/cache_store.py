"""
hopperwatch — Snapshot Cache Store
==================================
Durable key → {timestamp, payload} map backed by SQLite.

    store = CacheStore('/var/lib/hopperwatch/snapshots.db')
    store.write('power-status', {...})     # replaces any previous entry
    entry = store.read('power-status')     # CacheEntry or None (never written)

Contract:
  - write() stamps an ISO-8601 UTC timestamp and fully replaces the row.
    There is no merge and no eviction; the last successful write wins.
  - read() returns None only for a key that was never written. A stale
    entry is returned as-is with its own timestamp.
  - One writer process. Writes are serialized by a lock; reads open their
    own connection and never wait on the lock (WAL journal).
"""

import os
import json
import sqlite3
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

log = logging.getLogger("hopperwatch.cache")


@dataclass(frozen=True)
class CacheEntry:
    key:       str
    timestamp: datetime
    payload:   Any

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - self.timestamp).total_seconds())

    def to_dict(self) -> dict:
        return {
            "key":       self.key,
            "timestamp": self.timestamp.isoformat(),
            "data":      self.payload,
        }


class CacheStore:

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        parent = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(parent, exist_ok=True)
        with self._lock:
            conn = self._conn()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        key        TEXT PRIMARY KEY,
                        timestamp  TEXT NOT NULL,
                        payload    TEXT NOT NULL
                    )
                """)
                conn.commit()
            finally:
                conn.close()

    # ── Write side (scheduler jobs only) ──────────────────────────────────────
    def write(self, key: str, payload: Any) -> CacheEntry:
        body = json.dumps(payload)        # fail before touching the row
        now  = datetime.now(timezone.utc)
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, timestamp, payload) VALUES (?,?,?)",
                    (key, now.isoformat(), body),
                )
                conn.commit()
            finally:
                conn.close()
        log.info("Cache updated: %s", key)
        return CacheEntry(key=key, timestamp=now, payload=payload)

    # ── Read side ─────────────────────────────────────────────────────────────
    def read(self, key: str) -> Optional[CacheEntry]:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT key, timestamp, payload FROM cache_entries WHERE key=?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return CacheEntry(
            key       = row["key"],
            timestamp = datetime.fromisoformat(row["timestamp"]),
            payload   = json.loads(row["payload"]),
        )

    def keys(self) -> dict:
        """key → ISO timestamp of its last write."""
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT key, timestamp FROM cache_entries ORDER BY key"
            ).fetchall()
        finally:
            conn.close()
        return {r["key"]: r["timestamp"] for r in rows}

    def age(self, key: str) -> Optional[float]:
        entry = self.read(key)
        return entry.age_seconds() if entry else None
