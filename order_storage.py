"""SQLite ledger of order submissions keyed by idempotency key."""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from config import _ensure_parent_dir

STATES = ("RESERVED", "SUBMITTING", "SUBMITTED", "FAILED")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class OrderSubmission:
    id: str
    idempotency_key: str
    source: str
    broker_provider: str
    request_json: str
    state: str
    broker_order_id: Optional[str] = None
    last_error_json: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OrderSubmission":
        return cls(**{key: row[key] for key in row.keys()})


class OrderSubmissionStore:
    """Thread-safe access to the ``order_submissions`` table.

    ``path`` may be ``":memory:"`` for tests; a single connection is shared
    and guarded by a lock.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        if path != ":memory:":
            _ensure_parent_dir(path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, timeout=30.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock, self._conn:
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS order_submissions (
                    id TEXT PRIMARY KEY,
                    idempotency_key TEXT NOT NULL UNIQUE,
                    source TEXT NOT NULL,
                    broker_provider TEXT NOT NULL,
                    request_json TEXT NOT NULL,
                    state TEXT NOT NULL,
                    broker_order_id TEXT,
                    last_error_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_order_submissions_state ON order_submissions (state)")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get_by_key(self, idempotency_key: str) -> Optional[OrderSubmission]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM order_submissions WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
        return OrderSubmission.from_row(row) if row else None

    def reserve(
        self,
        idempotency_key: str,
        *,
        source: str,
        broker_provider: str,
        request: Mapping[str, Any],
    ) -> OrderSubmission:
        """Insert a RESERVED row unless the key exists; return the stored row."""

        now = _now_iso()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT OR IGNORE INTO order_submissions
                    (id, idempotency_key, source, broker_provider, request_json, state, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'RESERVED', ?, ?)
                """,
                (
                    uuid.uuid4().hex,
                    idempotency_key,
                    source,
                    broker_provider,
                    json.dumps(dict(request), sort_keys=True, default=str),
                    now,
                    now,
                ),
            )
        row = self.get_by_key(idempotency_key)
        if row is None:
            raise RuntimeError("Failed to reserve order submission")
        return row

    def try_transition(self, submission_id: str, from_states: Iterable[str], to_state: str) -> bool:
        """Compare-and-set the state; returns whether a row changed."""

        allowed = list(from_states)
        if not allowed:
            return False
        placeholders = ", ".join("?" for _ in allowed)
        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"UPDATE order_submissions SET state = ?, updated_at = ? WHERE id = ? AND state IN ({placeholders})",
                (to_state, _now_iso(), submission_id, *allowed),
            )
        return cursor.rowcount > 0

    def set_state(
        self,
        submission_id: str,
        state: str,
        *,
        broker_order_id: Optional[str] = None,
        last_error: Optional[Mapping[str, Any]] = None,
    ) -> None:
        error_json = json.dumps(dict(last_error), default=str) if last_error is not None else None
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE order_submissions
                SET state = ?,
                    broker_order_id = COALESCE(?, broker_order_id),
                    last_error_json = COALESCE(?, last_error_json),
                    updated_at = ?
                WHERE id = ?
                """,
                (state, broker_order_id, error_json, _now_iso(), submission_id),
            )


__all__ = ["OrderSubmission", "OrderSubmissionStore", "STATES"]
