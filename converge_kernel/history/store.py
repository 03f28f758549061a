"""
Run History Store — append-only record of reconciliation runs.

Every cycle produces one ReconciliationRun, including cycles that failed
before applying anything.

Behavioral Contract:
- Append-only. A run is never modified after it is recorded.
- Queryable by id, status and recency.
"""

import json
import sqlite3
from typing import List, Optional

from converge_kernel.models.run import OperationStatus, ReconciliationRun, RunStatus


class RunHistoryStore:
    """
    Append-only run history.
    Defaults to an in-memory SQLite database; pass a path to persist.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the runs table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                trigger TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                operation_count INTEGER NOT NULL,
                failed_count INTEGER NOT NULL,
                error TEXT,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)
        """)
        self._conn.commit()

    def append(self, run: ReconciliationRun) -> ReconciliationRun:
        """Record a finished run."""
        full_json = json.dumps(run.model_dump(mode="json"), default=str)
        self._conn.execute(
            """
            INSERT INTO runs (
                id, trigger, status, started_at, finished_at,
                operation_count, failed_count, error, record_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                run.trigger,
                run.status.value,
                run.started_at.isoformat(),
                run.finished_at.isoformat() if run.finished_at else None,
                len(run.outcomes),
                run.count(OperationStatus.FAILED),
                run.error,
                full_json,
            ),
        )
        self._conn.commit()
        return run

    def _deserialize(self, row: sqlite3.Row) -> ReconciliationRun:
        return ReconciliationRun.model_validate_json(row["record_json"])

    def get_by_id(self, run_id: str) -> Optional[ReconciliationRun]:
        """Get a specific run by ID."""
        row = self._conn.execute(
            "SELECT record_json FROM runs WHERE id = ?", (run_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_status(self, status: RunStatus) -> List[ReconciliationRun]:
        """All runs that ended with the given status, oldest first."""
        rows = self._conn.execute(
            "SELECT record_json FROM runs WHERE status = ? ORDER BY rowid",
            (status.value,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[ReconciliationRun]:
        """Get the most recent runs, oldest first."""
        rows = self._conn.execute(
            "SELECT record_json FROM runs ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def count(self) -> int:
        """Total number of recorded runs."""
        row = self._conn.execute("SELECT COUNT(*) as cnt FROM runs").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
