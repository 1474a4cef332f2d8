"""Durable operation store (SQLite).

Every operation and its lifecycle is persisted so history survives a
restart. All writes go through a single connection guarded by a lock;
each statement is atomic, so output appended concurrently from stdout
and stderr readers never interleaves within a chunk.
"""

import json
import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

from operations.models import (
    CANCELLED, FAILED, QUEUED, RUNNING, STATUSES, SUCCESS,
    Operation, format_ts, parse_ts, utcnow,
)

logger = logging.getLogger(__name__)

STALE_RUNNING_ERROR = 'Orchestrator restarted while operation was running'

SCHEMA = """
CREATE TABLE IF NOT EXISTS operations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    app TEXT NOT NULL,
    env TEXT,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    ref TEXT,
    vars TEXT,
    callback_url TEXT,
    output TEXT NOT NULL DEFAULT '',
    error TEXT,
    initiated_by TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    duration_ms INTEGER
);
CREATE INDEX IF NOT EXISTS idx_ops_app_env ON operations (app, env);
CREATE INDEX IF NOT EXISTS idx_ops_status ON operations (status);
CREATE INDEX IF NOT EXISTS idx_ops_created ON operations (created_at DESC);
"""


class OperationStore:
    """SQLite-backed operation store.

    Ordering: list() is newest-first, get_next_queued() is FIFO. Both
    order by created_at and fall back to insertion sequence for ties.
    """

    def __init__(self, path: Path | str):
        self.path = str(path)
        if self.path != ':memory:':
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        if self.path != ':memory:':
            self._conn.execute('PRAGMA journal_mode=WAL')
        with self._lock, self._conn:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock, self._conn:
            return self._conn.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def create(
        self,
        app: str,
        env: Optional[str],
        type: str,
        ref: Optional[str] = None,
        vars: Optional[dict] = None,
        callback_url: Optional[str] = None,
        initiated_by: Optional[str] = None,
    ) -> str:
        """Persist a new queued operation and return its id."""
        op_id = str(uuid.uuid4())
        self._execute(
            'INSERT INTO operations (id, app, env, type, status, ref, vars, callback_url, '
            'initiated_by, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
            (op_id, app, env, type, QUEUED, ref, json.dumps(vars) if vars else None,
             callback_url, initiated_by, format_ts(utcnow())),
        )
        return op_id

    def get(self, op_id: str) -> Optional[Operation]:
        row = self._fetchone('SELECT * FROM operations WHERE id = ?', (op_id,))
        return Operation.from_row(row) if row else None

    def list(
        self,
        app: Optional[str] = None,
        env: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Operation]:
        """Operations matching the filter, newest first."""
        if status is not None and status not in STATUSES:
            raise ValueError(f"Unknown status: {status}")
        sql = 'SELECT * FROM operations WHERE 1=1'
        params: list = []
        if app:
            sql += ' AND app = ?'
            params.append(app)
        if env:
            sql += ' AND env = ?'
            params.append(env)
        if status:
            sql += ' AND status = ?'
            params.append(status)
        sql += ' ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?'
        params += [limit, offset]
        return [Operation.from_row(r) for r in self._fetchall(sql, tuple(params))]

    def mark_running(self, op_id: str) -> bool:
        """queued -> running. Returns False if the operation left queued meanwhile."""
        cur = self._execute(
            'UPDATE operations SET status = ?, started_at = ? WHERE id = ? AND status = ?',
            (RUNNING, format_ts(utcnow()), op_id, QUEUED),
        )
        return cur.rowcount == 1

    def _finish(self, op_id: str, status: str, error: Optional[str] = None,
                from_statuses: tuple = (RUNNING,)) -> bool:
        now = utcnow()
        with self._lock, self._conn:
            row = self._conn.execute(
                'SELECT status, started_at FROM operations WHERE id = ?', (op_id,)
            ).fetchone()
            if row is None or row['status'] not in from_statuses:
                return False
            # Leaving queued directly still stamps started_at so every
            # non-queued row has one.
            started_at = row['started_at'] or format_ts(now)
            duration_ms = int((now - parse_ts(started_at)).total_seconds() * 1000)
            self._conn.execute(
                'UPDATE operations SET status = ?, started_at = ?, completed_at = ?, error = ?, '
                'duration_ms = ? WHERE id = ?',
                (status, started_at, format_ts(now), error, duration_ms, op_id),
            )
            return True

    def mark_success(self, op_id: str) -> bool:
        return self._finish(op_id, SUCCESS)

    def mark_failed(self, op_id: str, error: str) -> bool:
        return self._finish(op_id, FAILED, error=error)

    def mark_cancelled(self, op_id: str) -> bool:
        """running -> cancelled, for operations killed while executing."""
        return self._finish(op_id, CANCELLED)

    def cancel(self, op_id: str) -> bool:
        """Cancel a queued operation. Running or terminal operations are left alone."""
        return self._finish(op_id, CANCELLED, from_statuses=(QUEUED,))

    def append_output(self, op_id: str, text: str) -> None:
        if not text:
            return
        self._execute('UPDATE operations SET output = output || ? WHERE id = ?', (text, op_id))

    def get_next_queued(self, app: str, env: Optional[str]) -> Optional[Operation]:
        """Oldest queued operation for the resource."""
        if env is None:
            sql = 'SELECT * FROM operations WHERE app = ? AND env IS NULL AND status = ?'
            params: tuple = (app, QUEUED)
        else:
            sql = 'SELECT * FROM operations WHERE app = ? AND env = ? AND status = ?'
            params = (app, env, QUEUED)
        row = self._fetchone(sql + ' ORDER BY created_at ASC, seq ASC LIMIT 1', params)
        return Operation.from_row(row) if row else None

    def resources_with_queued(self) -> List[Tuple[str, Optional[str]]]:
        rows = self._fetchall(
            'SELECT app, env, MIN(seq) AS first FROM operations WHERE status = ? '
            'GROUP BY app, env ORDER BY first', (QUEUED,))
        return [(r['app'], r['env']) for r in rows]

    def reconcile_stale(self) -> List[str]:
        """Fail operations left running by a previous process.

        Must only be called before this process starts executing anything.
        """
        stale = [r['id'] for r in self._fetchall('SELECT id FROM operations WHERE status = ?', (RUNNING,))]
        for op_id in stale:
            self.append_output(op_id, f'[orchestrator] {STALE_RUNNING_ERROR}\n')
            self.mark_failed(op_id, STALE_RUNNING_ERROR)
        if stale:
            logger.warning(f"Marked {len(stale)} stale running operation(s) as failed")
        return stale
