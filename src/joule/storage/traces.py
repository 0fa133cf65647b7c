"""Trace persistence.

This module provides:
- TraceRepository: the protocol the TraceLogger persists through
- SQLiteTraceRepository: stores finished traces as JSON rows in SQLite
"""

import json
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from joule.kernel.models import ExecutionTrace


@runtime_checkable
class TraceRepository(Protocol):
    """Persistence target for finished traces."""

    def save(self, trace: "ExecutionTrace") -> None:
        ...

    def load(self, trace_id: str) -> Optional["ExecutionTrace"]:
        ...


class SQLiteTraceRepository:
    """Stores execution traces in a SQLite table.

    Supports context manager protocol:
        with SQLiteTraceRepository(db_path) as repo:
            repo.save(trace)
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the repository.

        Args:
            db_path: Path to SQLite database file. Defaults to config.db_path.
        """
        if db_path is None:
            from joule.config import config

            db_path = config.db_path
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def __enter__(self) -> "SQLiteTraceRepository":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Connections are per-call; nothing is held open."""

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS traces (
                    trace_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    total_duration_ms REAL NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_traces_task ON traces(task_id)")

    def save(self, trace: "ExecutionTrace") -> None:
        """Insert or replace a trace."""
        payload = json.dumps(trace.model_dump(), default=str)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO traces
                    (trace_id, task_id, started_at, total_duration_ms, data)
                VALUES (?, ?, ?, ?, ?)
                """,
                (trace.trace_id, trace.task_id, trace.started_at, trace.total_duration_ms, payload),
            )

    def load(self, trace_id: str) -> Optional["ExecutionTrace"]:
        """Load a trace by id, or None if absent."""
        from joule.kernel.models import ExecutionTrace

        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM traces WHERE trace_id = ?", (trace_id,)
            ).fetchone()
        if row is None:
            return None
        return ExecutionTrace.model_validate(json.loads(row["data"]))

    def list_traces(self, limit: int = 20, task_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List trace summaries, newest first.

        Args:
            limit: Maximum rows
            task_id: Only traces for this task

        Returns:
            Dicts with trace_id, task_id, started_at, total_duration_ms
        """
        query = "SELECT trace_id, task_id, started_at, total_duration_ms FROM traces"
        params: List[Any] = []
        if task_id:
            query += " WHERE task_id = ?"
            params.append(task_id)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]
