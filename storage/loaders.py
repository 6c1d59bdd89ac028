"""
Database loaders - schema setup and idempotent upsert functions for SQLite.
Thin IO layer with focus on data integrity and idempotence.
"""

import sqlite3
from datetime import date, datetime
from typing import Dict, Any, List, Tuple, Union


def init_database(conn: sqlite3.Connection) -> None:
    """
    Initialize database with required tables.
    Idempotent - safe to call multiple times.

    Args:
        conn: SQLite connection
    """
    conn.execute("PRAGMA foreign_keys = ON")

    # Daily closes written by the price-ingestion collaborator
    conn.execute("""
        CREATE TABLE IF NOT EXISTS prices (
            ticker TEXT NOT NULL,
            date DATE NOT NULL,
            close REAL NOT NULL,
            source TEXT NOT NULL,
            ingested_at DATETIME NOT NULL,
            PRIMARY KEY (ticker, date)
        )
    """)

    # Instrument directory: venue lookup, peer listing, display labels
    conn.execute("""
        CREATE TABLE IF NOT EXISTS instruments (
            ticker TEXT PRIMARY KEY,
            name TEXT,
            market TEXT NOT NULL
        )
    """)

    # Pairwise correlations, directional rows of a symmetric relation
    conn.execute("""
        CREATE TABLE IF NOT EXISTS price_correlations (
            ticker_a TEXT NOT NULL,
            ticker_b TEXT NOT NULL,
            correlation REAL NOT NULL CHECK(correlation BETWEEN -1 AND 1),
            sample_size INTEGER NOT NULL CHECK(sample_size >= 5),
            period_days INTEGER NOT NULL DEFAULT 90,
            computed_at DATETIME NOT NULL,
            PRIMARY KEY (ticker_a, ticker_b)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS runs (
            run_id INTEGER PRIMARY KEY AUTOINCREMENT,
            dag_name TEXT NOT NULL,
            started_at DATETIME NOT NULL,
            finished_at DATETIME,
            status TEXT NOT NULL CHECK(status IN ('running', 'completed', 'failed')),
            rows_in INTEGER,
            rows_out INTEGER,
            log_path TEXT,
            error_message TEXT
        )
    """)

    conn.execute("CREATE INDEX IF NOT EXISTS idx_prices_ticker ON prices(ticker)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_prices_date ON prices(date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_instruments_market ON instruments(market)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_price_corr_a ON price_correlations(ticker_a)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_price_corr_b ON price_correlations(ticker_b)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)")

    conn.commit()


def get_connection(
    db_path: str = './data/research.db',
    check_same_thread: bool = True
) -> sqlite3.Connection:
    """
    Get SQLite connection with proper configuration.

    Args:
        db_path: Path to SQLite database file
        check_same_thread: Set False when the connection is handed between
            worker threads (e.g. web request handlers)

    Returns:
        Configured SQLite connection
    """
    conn = sqlite3.connect(db_path, check_same_thread=check_same_thread)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")  # Better concurrency
    return conn


def to_db_value(value: Union[date, datetime, Any]) -> Any:
    """Render dates and timestamps as ISO strings before binding."""
    if isinstance(value, datetime):
        return value.isoformat(sep=' ')
    if isinstance(value, date):
        return value.isoformat()
    return value


def upsert_prices(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """
    Upsert daily close rows into database.
    Idempotent - can be called multiple times with same data.

    Args:
        conn: SQLite connection
        rows: List of dicts with ticker, date, close, source, ingested_at

    Returns:
        Tuple of (inserted_count, updated_count)
    """
    if not rows:
        return (0, 0)

    inserted = 0
    updated = 0

    for row in rows:
        ticker = row['ticker'].upper()
        trading_date = to_db_value(_trading_day(row['date']))

        cursor = conn.execute(
            "SELECT COUNT(*) FROM prices WHERE ticker = ? AND date = ?",
            (ticker, trading_date)
        )
        exists = cursor.fetchone()[0] > 0

        if exists:
            conn.execute("""
                UPDATE prices SET close = ?, source = ?, ingested_at = ?
                WHERE ticker = ? AND date = ?
            """, (
                row['close'], row['source'], to_db_value(row['ingested_at']),
                ticker, trading_date
            ))
            updated += 1
        else:
            conn.execute("""
                INSERT INTO prices (ticker, date, close, source, ingested_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                ticker, trading_date, row['close'], row['source'],
                to_db_value(row['ingested_at'])
            ))
            inserted += 1

    conn.commit()
    return (inserted, updated)


def upsert_instruments(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """
    Upsert instrument directory rows (ticker, name, market).

    Args:
        conn: SQLite connection
        rows: List of instrument dictionaries

    Returns:
        Tuple of (inserted_count, updated_count)
    """
    if not rows:
        return (0, 0)

    inserted = 0
    updated = 0

    for row in rows:
        ticker = row['ticker'].upper()
        cursor = conn.execute(
            "SELECT COUNT(*) FROM instruments WHERE ticker = ?", (ticker,)
        )
        exists = cursor.fetchone()[0] > 0

        if exists:
            conn.execute(
                "UPDATE instruments SET name = ?, market = ? WHERE ticker = ?",
                (row.get('name'), row['market'], ticker)
            )
            updated += 1
        else:
            conn.execute(
                "INSERT INTO instruments (ticker, name, market) VALUES (?, ?, ?)",
                (ticker, row.get('name'), row['market'])
            )
            inserted += 1

    conn.commit()
    return (inserted, updated)


def _trading_day(value: Any) -> Any:
    """Price rows are keyed by calendar day; timestamps are truncated to their date."""
    if isinstance(value, datetime):
        return value.date()
    return value
