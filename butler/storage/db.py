"""SQLite storage for run results and captured tokens."""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from butler.storage.models import ALL_TABLES, RunResultRecord
from butler.tokens.capture import CapturedToken

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/butler.db")


class ButlerDatabase:
    """Wraps SQLite for the last-run results and the captured-token list.

    Designed for single-threaded use from an async event loop: every call is
    synchronous but fast at this volume.  Serves as the orchestrator's
    ResultSink and the token store's TokenBackend.

    Usage::

        db = ButlerDatabase()
        db.save_run_result("archive", result.to_dict())
        last = db.get_last_result("archive")
    """

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()

    # ── Run results ─────────────────────────────────────────────────────────────

    def save_run_result(self, kind: str, payload: dict[str, Any]) -> int:
        """Append a run summary; the newest row per kind is the "last result"."""
        with self._conn:
            cursor = self._conn.execute(
                "INSERT INTO run_results (kind, success, payload) VALUES (?, ?, ?)",
                (kind, int(bool(payload.get("success"))), json.dumps(payload, default=str)),
            )
        logger.debug("Saved %s run result #%s", kind, cursor.lastrowid)
        return int(cursor.lastrowid or 0)

    def get_last_result(self, kind: str = "archive") -> RunResultRecord | None:
        """Return the most recent result of ``kind``, or None if there is none."""
        row = self._conn.execute(
            "SELECT id, kind, success, payload, created_at FROM run_results "
            "WHERE kind = ? ORDER BY id DESC LIMIT 1",
            (kind,),
        ).fetchone()
        if row is None:
            return None
        d = dict(row)
        d["success"] = bool(d["success"])
        return RunResultRecord(**d)

    # ── Captured tokens ─────────────────────────────────────────────────────────

    def load_tokens(self) -> list[CapturedToken]:
        """Return stored tokens, newest first."""
        rows = self._conn.execute(
            "SELECT token, url, domain, method, timestamp, last_seen, count "
            "FROM captured_tokens ORDER BY position",
        ).fetchall()
        return [CapturedToken(**dict(r)) for r in rows]

    def replace_tokens(self, tokens: list[CapturedToken]) -> None:
        """Overwrite the stored list in one transaction, preserving order."""
        with self._conn:
            self._conn.execute("DELETE FROM captured_tokens")
            self._conn.executemany(
                """
                INSERT INTO captured_tokens
                    (token, url, domain, method, timestamp, last_seen, count, position)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (t.token, t.url, t.domain, t.method, t.timestamp, t.last_seen, t.count, i)
                    for i, t in enumerate(tokens)
                ],
            )

    def clear_tokens(self) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM captured_tokens")

    # ── Private ─────────────────────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._conn:
            for ddl in ALL_TABLES:
                self._conn.execute(ddl)
