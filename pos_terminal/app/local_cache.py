"""
Durable terminal-side storage (SQLite).

Layout:
- cache_tables: one JSON snapshot per (business scope, table)
- pending_actions: the offline write queue, ordered by seq
- cache_meta: session marker + setup-completion flag
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from pos_terminal.app.models import PendingAction

SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_tables (
  scope TEXT NOT NULL,
  table_name TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  PRIMARY KEY (scope, table_name)
);

CREATE TABLE IF NOT EXISTS pending_actions (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  table_name TEXT NOT NULL,
  op TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  business_id TEXT,
  created_at TEXT NOT NULL,
  attempt_count INTEGER NOT NULL DEFAULT 0,
  last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_pending_actions_table_seq ON pending_actions (table_name, seq);

CREATE TABLE IF NOT EXISTS cache_meta (
  key TEXT PRIMARY KEY,
  value TEXT
);
"""

SESSION_KEY = "session_user_id"
SETUP_KEY = "setup_complete"
GLOBAL_SCOPE = "_global"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _pending_filter(table: Optional[str], business_id: Optional[str]) -> tuple[str, tuple]:
    clauses, params = [], []
    if table:
        clauses.append("table_name = ?")
        params.append(table)
    if business_id:
        clauses.append("business_id = ?")
        params.append(business_id)
    if not clauses:
        return "", ()
    return " WHERE " + " AND ".join(clauses), tuple(params)


class LocalCache:
    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._conn = sqlite3.connect(path)
        self._conn.row_factory = sqlite3.Row
        self.init_db()

    def init_db(self):
        with self._conn:
            self._conn.executescript(SCHEMA)
            # CREATE TABLE IF NOT EXISTS does not add new columns to an older cache file.
            cur = self._conn.cursor()
            cur.execute("PRAGMA table_info(pending_actions)")
            cols = {r[1] for r in cur.fetchall()}
            wanted = {"attempt_count": "INTEGER NOT NULL DEFAULT 0", "last_error": "TEXT"}
            for col, ddl in wanted.items():
                if col not in cols:
                    cur.execute(f"ALTER TABLE pending_actions ADD COLUMN {col} {ddl}")

    def close(self):
        self._conn.close()

    # -- per-table snapshots --

    def get_table(self, table: str, scope: Optional[str]) -> list[dict]:
        cur = self._conn.cursor()
        cur.execute(
            "SELECT payload_json FROM cache_tables WHERE scope = ? AND table_name = ?",
            (scope or GLOBAL_SCOPE, table),
        )
        row = cur.fetchone()
        if not row:
            return []
        try:
            data = json.loads(row["payload_json"])
        except ValueError:
            return []
        return data if isinstance(data, list) else []

    def put_table(self, table: str, scope: Optional[str], records: list[dict]):
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO cache_tables (scope, table_name, payload_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(scope, table_name) DO UPDATE SET
                  payload_json=excluded.payload_json,
                  updated_at=excluded.updated_at
                """,
                (scope or GLOBAL_SCOPE, table, json.dumps(records, default=str), _now()),
            )

    # -- pending-action queue --

    def append_pending(self, action: PendingAction) -> int:
        with self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO pending_actions (table_name, op, payload_json, business_id, created_at, attempt_count, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    action.table,
                    action.op,
                    json.dumps(action.payload, default=str),
                    action.business_id,
                    action.created_at.isoformat(),
                    action.attempt_count,
                    action.last_error,
                ),
            )
            return int(cur.lastrowid)

    def list_pending(self, table: Optional[str] = None) -> list[PendingAction]:
        cur = self._conn.cursor()
        if table:
            cur.execute("SELECT * FROM pending_actions WHERE table_name = ? ORDER BY seq", (table,))
        else:
            cur.execute("SELECT * FROM pending_actions ORDER BY seq")
        out = []
        for r in cur.fetchall():
            out.append(
                PendingAction(
                    seq=r["seq"],
                    table=r["table_name"],
                    op=r["op"],
                    payload=json.loads(r["payload_json"]),
                    business_id=r["business_id"],
                    created_at=r["created_at"],
                    attempt_count=r["attempt_count"],
                    last_error=r["last_error"],
                )
            )
        return out

    def pending_tables(self) -> list[str]:
        cur = self._conn.cursor()
        cur.execute("SELECT table_name FROM pending_actions GROUP BY table_name ORDER BY MIN(seq)")
        return [r[0] for r in cur.fetchall()]

    def count_pending(self, table: Optional[str] = None, business_id: Optional[str] = None) -> int:
        where, params = _pending_filter(table, business_id)
        cur = self._conn.cursor()
        cur.execute(f"SELECT COUNT(1) FROM pending_actions{where}", params)
        row = cur.fetchone()
        return int(row[0] if row else 0)

    def remove_pending(self, seq: int):
        with self._conn:
            self._conn.execute("DELETE FROM pending_actions WHERE seq = ?", (seq,))

    def mark_pending_failed(self, seq: int, error: str):
        with self._conn:
            self._conn.execute(
                "UPDATE pending_actions SET attempt_count = attempt_count + 1, last_error = ? WHERE seq = ?",
                ((error or "")[:1000], seq),
            )

    def discard_pending(self, table: str, business_id: Optional[str] = None) -> int:
        where, params = _pending_filter(table, business_id)
        with self._conn:
            cur = self._conn.execute(f"DELETE FROM pending_actions{where}", params)
            return int(cur.rowcount or 0)

    # -- meta --

    def get_meta(self, key: str) -> Optional[str]:
        cur = self._conn.cursor()
        cur.execute("SELECT value FROM cache_meta WHERE key = ?", (key,))
        row = cur.fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: Optional[str]):
        with self._conn:
            if value is None:
                self._conn.execute("DELETE FROM cache_meta WHERE key = ?", (key,))
                return
            self._conn.execute(
                "INSERT INTO cache_meta (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, str(value)),
            )

    @property
    def session_user_id(self) -> Optional[str]:
        return self.get_meta(SESSION_KEY)

    @session_user_id.setter
    def session_user_id(self, user_id: Optional[str]):
        self.set_meta(SESSION_KEY, user_id)

    @property
    def setup_complete(self) -> bool:
        return (self.get_meta(SETUP_KEY) or "").strip().lower() == "true"

    @setup_complete.setter
    def setup_complete(self, done: bool):
        self.set_meta(SETUP_KEY, "true" if done else None)
