"""
SQLite-backed output store.

Same semantics as MemoryOutputStore, but records survive the process:
approvals can be seeded ahead of a run and results inspected afterwards.
"""
import os
import json
import sqlite3
import logging
import threading
from datetime import datetime

from workflows.models import OutputRecord
from workflows.store import OutputStore

logger = logging.getLogger(__name__)


class SqliteOutputStore(OutputStore):
    def __init__(self, db_path: str):
        self._db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        # One connection per store; ":memory:" databases live only as long as it does
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _init_schema(self):
        with self._lock, self._conn:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS outputs (
                    node_id      TEXT    NOT NULL,
                    iteration    INTEGER NOT NULL,
                    payload      TEXT    NOT NULL,
                    produced_at  TEXT    NOT NULL,
                    PRIMARY KEY (node_id, iteration)
                );
            """)

    # ── primitives ─────────────────────────────────────────────────
    def _put(self, record: OutputRecord) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO outputs (node_id, iteration, payload, produced_at) VALUES (?,?,?,?)",
                (record.node_id, record.iteration, json.dumps(record.payload), record.produced_at.isoformat()),
            )

    def _get(self, node_id: str, iteration: int) -> OutputRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM outputs WHERE node_id = ? AND iteration = ?",
                (node_id, iteration),
            ).fetchone()
        return self._parse(row) if row else None

    def iterations(self, node_id: str) -> list[int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT iteration FROM outputs WHERE node_id = ? ORDER BY iteration",
                (node_id,),
            ).fetchall()
        return [r["iteration"] for r in rows]

    def node_ids(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute("SELECT DISTINCT node_id FROM outputs ORDER BY node_id").fetchall()
        return [r["node_id"] for r in rows]

    def delete(self, node_id: str, iteration: int | None = None) -> int:
        """Drop one record, or every record of a node. Returns rows removed."""
        sql, params = "DELETE FROM outputs WHERE node_id = ?", [node_id]
        if iteration is not None:
            sql += " AND iteration = ?"
            params.append(iteration)
        with self._lock, self._conn:
            cur = self._conn.execute(sql, params)
        return cur.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── helpers ────────────────────────────────────────────────────
    @staticmethod
    def _parse(row) -> OutputRecord:
        return OutputRecord(
            node_id=row["node_id"],
            iteration=row["iteration"],
            payload=json.loads(row["payload"]),
            produced_at=datetime.fromisoformat(row["produced_at"]),
        )
