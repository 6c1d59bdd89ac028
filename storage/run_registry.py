"""
Run registry - one row per correlation job run.
Records lifecycle status, instruments attempted, rows written and failure text.
"""

import sqlite3
from datetime import datetime
from typing import Dict, Any, List, Optional
from enum import Enum

from storage.loaders import to_db_value


_RUN_COLUMNS = (
    'run_id', 'dag_name', 'started_at', 'finished_at', 'status',
    'rows_in', 'rows_out', 'log_path', 'error_message'
)


class RunStatus(str, Enum):
    """Lifecycle of a run."""
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


class RunNotFoundError(Exception):
    """Raised when run ID is not found."""
    pass


def start_run(
    conn: sqlite3.Connection,
    dag_name: str,
    started_at: Optional[datetime] = None
) -> int:
    """
    Register a run in RUNNING state.

    Returns:
        The new run_id
    """
    cursor = conn.execute(
        "INSERT INTO runs (dag_name, started_at, status) VALUES (?, ?, ?)",
        (dag_name, to_db_value(started_at or datetime.now()), RunStatus.RUNNING.value)
    )
    conn.commit()
    return cursor.lastrowid


def finish_run(
    conn: sqlite3.Connection,
    run_id: int,
    status: RunStatus,
    finished_at: Optional[datetime] = None,
    rows_in: Optional[int] = None,
    rows_out: Optional[int] = None,
    log_path: Optional[str] = None,
    error_message: Optional[str] = None
) -> None:
    """
    Close a run with its final status.

    Args:
        conn: SQLite connection
        run_id: Run ID from start_run()
        status: COMPLETED or FAILED (enum or its string value)
        finished_at: End timestamp (defaults to now)
        rows_in: Instruments attempted
        rows_out: Correlation rows written
        log_path: Optional path to a detailed log
        error_message: Failure text for FAILED runs

    Raises:
        RunNotFoundError: If run_id doesn't exist
    """
    cursor = conn.execute("""
        UPDATE runs
        SET status = ?, finished_at = ?, rows_in = ?, rows_out = ?,
            log_path = ?, error_message = ?
        WHERE run_id = ?
    """, (
        RunStatus(status).value,
        to_db_value(finished_at or datetime.now()),
        rows_in,
        rows_out,
        log_path,
        error_message,
        run_id
    ))

    if cursor.rowcount == 0:
        conn.rollback()
        raise RunNotFoundError(f"Run ID {run_id} not found")

    conn.commit()


def get_run_status(conn: sqlite3.Connection, run_id: int) -> Dict[str, Any]:
    """
    Fetch one run with parsed timestamps and duration_seconds.

    Raises:
        RunNotFoundError: If run_id doesn't exist
    """
    cursor = conn.execute(
        f"SELECT {', '.join(_RUN_COLUMNS)} FROM runs WHERE run_id = ?", (run_id,)
    )
    row = cursor.fetchone()

    if row is None:
        raise RunNotFoundError(f"Run ID {run_id} not found")

    return _run_row(row)


def list_recent_runs(
    conn: sqlite3.Connection,
    limit: int = 50,
    dag_name: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Most recent runs first, optionally for one job name only.
    """
    query = f"SELECT {', '.join(_RUN_COLUMNS)} FROM runs"
    params: List[Any] = []

    if dag_name:
        query += " WHERE dag_name = ?"
        params.append(dag_name)

    query += " ORDER BY started_at DESC, run_id DESC LIMIT ?"
    params.append(limit)

    return [_run_row(row) for row in conn.execute(query, params).fetchall()]


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value.replace(' ', 'T')) if value else None


def _run_row(row: tuple) -> Dict[str, Any]:
    run_info = dict(zip(_RUN_COLUMNS, row))
    run_info['started_at'] = _parse_ts(run_info['started_at'])
    run_info['finished_at'] = _parse_ts(run_info['finished_at'])
    run_info['status'] = RunStatus(run_info['status'])

    if run_info['started_at'] and run_info['finished_at']:
        elapsed = run_info['finished_at'] - run_info['started_at']
        run_info['duration_seconds'] = int(elapsed.total_seconds())
    else:
        run_info['duration_seconds'] = None

    return run_info
