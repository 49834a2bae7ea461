"""SQLite table schemas and typed query result types for the storage layer."""

import json
from dataclasses import dataclass
from typing import Any


# ── DDL ────────────────────────────────────────────────────────────────────────

_CREATE_RUN_RESULTS = """
CREATE TABLE IF NOT EXISTS run_results (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    kind        TEXT NOT NULL,
    success     INTEGER NOT NULL,
    payload     TEXT NOT NULL,
    created_at  TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_RUN_RESULTS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_run_results_kind ON run_results (kind, id)
"""

_CREATE_CAPTURED_TOKENS = """
CREATE TABLE IF NOT EXISTS captured_tokens (
    token      TEXT PRIMARY KEY,
    url        TEXT NOT NULL DEFAULT '',
    domain     TEXT NOT NULL DEFAULT '',
    method     TEXT NOT NULL DEFAULT 'GET',
    timestamp  REAL NOT NULL,
    last_seen  REAL NOT NULL,
    count      INTEGER NOT NULL DEFAULT 1,
    position   INTEGER NOT NULL
)
"""

#: All DDL statements in creation order.
ALL_TABLES: list[str] = [
    _CREATE_RUN_RESULTS,
    _CREATE_RUN_RESULTS_INDEX,
    _CREATE_CAPTURED_TOKENS,
]


# ── Query result types ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RunResultRecord:
    """A row from the run_results table."""

    id: int
    kind: str
    success: bool
    payload: str  # JSON-encoded result dict
    created_at: str

    def data(self) -> dict[str, Any]:
        return json.loads(self.payload)
