"""
SQLite persistence for spans.

Read helpers return plain dicts with ``input_data``/``output_data`` decoded,
so the CLI can render them without knowing about TraceSpan.
"""
import os
import json
import sqlite3
import logging
from contextlib import closing
from datetime import datetime, timedelta

from tracing.models import SPAN_COLUMNS

logger = logging.getLogger(__name__)

DEFAULT_TRACE_DB_PATH = "./data/traces.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS spans (
    id            TEXT PRIMARY KEY,
    trace_id      TEXT,
    parent_id     TEXT,
    span_type     TEXT NOT NULL,
    name          TEXT NOT NULL,
    node_id       TEXT,
    iteration     INTEGER,
    status        TEXT NOT NULL,
    error         TEXT,
    started_at    TEXT,
    ended_at      TEXT,
    duration_ms   REAL,
    input_data    TEXT,
    output_data   TEXT,
    model         TEXT,
    provider      TEXT,
    input_tokens  INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    cost_usd      REAL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS spans_by_trace ON spans(trace_id, started_at);
CREATE INDEX IF NOT EXISTS spans_by_node ON spans(node_id, iteration);
CREATE INDEX IF NOT EXISTS spans_by_status ON spans(status);
"""

_INSERT = "INSERT OR REPLACE INTO spans ({}) VALUES ({})".format(
    ", ".join(SPAN_COLUMNS), ", ".join("?" for _ in SPAN_COLUMNS),
)


class TraceStore:
    def __init__(self, db_path: str | None = None):
        self._db_path = db_path or os.environ.get("LOOPWORK_TRACE_DB", DEFAULT_TRACE_DB_PATH)
        os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.executescript(_SCHEMA)

    @property
    def db_path(self) -> str:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _query(self, sql: str, *params) -> list[dict]:
        with closing(self._connect()) as conn:
            return [_decode(row) for row in conn.execute(sql, params)]

    def save(self, span) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(_INSERT, span.as_row())

    def get_trace(self, trace_id: str) -> list[dict]:
        """Every span of one run in start order."""
        return self._query("SELECT * FROM spans WHERE trace_id = ? ORDER BY started_at", trace_id)

    def get_recent_traces(self, limit: int = 10) -> list[dict]:
        """One summary row per run, newest first."""
        return self._query(
            """
            SELECT trace_id,
                   COUNT(*) AS span_count,
                   MIN(started_at) AS started_at,
                   MAX(ended_at) AS ended_at,
                   ROUND(TOTAL(cost_usd), 6) AS total_cost,
                   SUM(status = 'error') AS error_count,
                   MAX(CASE WHEN span_type = 'workflow_run' THEN name END) AS workflow
            FROM spans
            WHERE trace_id IS NOT NULL
            GROUP BY trace_id
            ORDER BY MIN(started_at) DESC
            LIMIT ?
            """,
            limit,
        )

    def get_node_steps(self, node_id: str, trace_id: str | None = None) -> list[dict]:
        """Step spans of one node across iterations (and runs, unless trace_id is given)."""
        sql = "SELECT * FROM spans WHERE span_type = 'workflow_step' AND node_id = ?"
        params = [node_id]
        if trace_id:
            sql += " AND trace_id = ?"
            params.append(trace_id)
        return self._query(sql + " ORDER BY iteration, started_at", *params)

    def get_errors(self, limit: int = 20) -> list[dict]:
        return self._query(
            "SELECT * FROM spans WHERE status = 'error' ORDER BY started_at DESC LIMIT ?", limit,
        )

    def get_llm_summary(self, days: int = 7) -> dict:
        """Token and cost totals per model over the last ``days`` days."""
        since = (datetime.now() - timedelta(days=days)).isoformat()
        per_model = self._query(
            """
            SELECT model,
                   COUNT(*) AS calls,
                   SUM(input_tokens) AS input_tokens,
                   SUM(output_tokens) AS output_tokens,
                   ROUND(TOTAL(cost_usd), 6) AS cost,
                   ROUND(AVG(duration_ms), 1) AS avg_latency_ms,
                   SUM(status = 'error') AS errors
            FROM spans
            WHERE span_type = 'llm_call' AND started_at >= ?
            GROUP BY model
            ORDER BY cost DESC
            """,
            since,
        )
        return {
            "period_days": days,
            "by_model": per_model,
            "total_calls": sum(m["calls"] for m in per_model),
            "total_cost": sum(m["cost"] for m in per_model),
        }


def _decode(row: sqlite3.Row) -> dict:
    record = dict(row)
    for key in ("input_data", "output_data"):
        raw = record.get(key)
        if raw:
            try:
                record[key] = json.loads(raw)
            except ValueError:
                logger.debug(f"Span {record.get('id')} has non-JSON {key}")
    return record
