"""
Correlation store - reads and whole-set replacement of price_correlations rows.
Rows are directional (ticker_a is the query instrument); the relation is symmetric.
"""

import sqlite3
from typing import Dict, Any, List, Optional

from storage.loaders import to_db_value


_PAIR_COLUMNS = "ticker_a, ticker_b, correlation, sample_size, period_days, computed_at"


def replace_correlations(
    conn: sqlite3.Connection,
    ticker_a: str,
    rows: List[Dict[str, Any]]
) -> int:
    """
    Replace every stored row for ticker_a with the given rows.

    Delete and insert run in one transaction: either the whole new set
    lands or the previous set is left as it was.

    Args:
        conn: SQLite connection
        ticker_a: Query instrument whose rows are replaced
        rows: Dicts with ticker_b, correlation, sample_size, period_days, computed_at

    Returns:
        Number of rows written
    """
    params = [
        (
            ticker_a,
            row['ticker_b'],
            row['correlation'],
            row['sample_size'],
            row['period_days'],
            to_db_value(row['computed_at']),
        )
        for row in rows
    ]

    with conn:
        conn.execute("DELETE FROM price_correlations WHERE ticker_a = ?", (ticker_a,))
        conn.executemany(f"""
            INSERT INTO price_correlations ({_PAIR_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?)
        """, params)

    return len(params)


def read_correlations(conn: sqlite3.Connection, ticker_a: str) -> List[Dict[str, Any]]:
    """
    Read stored rows for one query instrument, correlation descending.

    Returns:
        List of {peer, correlation, sample_size, computed_at}
    """
    cursor = conn.execute("""
        SELECT ticker_b, correlation, sample_size, computed_at
        FROM price_correlations
        WHERE ticker_a = ?
        ORDER BY correlation DESC, ticker_b ASC
    """, (ticker_a,))

    return [
        {
            'peer': row[0],
            'correlation': row[1],
            'sample_size': row[2],
            'computed_at': row[3],
        }
        for row in cursor.fetchall()
    ]


def read_pairs_within(conn: sqlite3.Connection, tickers: List[str]) -> List[Dict[str, Any]]:
    """
    Read every stored row whose two instruments are both in the set.

    Both directions are matched by the same IN/IN filter.
    """
    if not tickers:
        return []

    placeholders = ','.join('?' for _ in tickers)
    cursor = conn.execute(f"""
        SELECT {_PAIR_COLUMNS}
        FROM price_correlations
        WHERE ticker_a IN ({placeholders}) AND ticker_b IN ({placeholders})
    """, list(tickers) + list(tickers))

    return [_pair_row(row) for row in cursor.fetchall()]


def read_pairs_filtered(
    conn: sqlite3.Connection,
    tickers: List[str],
    min_correlation: Optional[float] = None,
    max_correlation: Optional[float] = None,
    ascending: bool = False,
    limit: int = 10
) -> List[Dict[str, Any]]:
    """
    Read rows within a ticker set filtered by a correlation bound.

    Args:
        conn: SQLite connection
        tickers: Instrument set (both sides must belong to it)
        min_correlation: Keep rows with correlation >= this value
        max_correlation: Keep rows with correlation <= this value
        ascending: Sort order on correlation
        limit: Maximum rows returned

    Returns:
        List of pair dictionaries
    """
    if not tickers:
        return []

    placeholders = ','.join('?' for _ in tickers)
    query = f"""
        SELECT {_PAIR_COLUMNS}
        FROM price_correlations
        WHERE ticker_a IN ({placeholders}) AND ticker_b IN ({placeholders})
    """
    params: List[Any] = list(tickers) + list(tickers)

    if min_correlation is not None:
        query += " AND correlation >= ?"
        params.append(min_correlation)

    if max_correlation is not None:
        query += " AND correlation <= ?"
        params.append(max_correlation)

    query += f" ORDER BY correlation {'ASC' if ascending else 'DESC'}, ticker_a, ticker_b LIMIT ?"
    params.append(limit)

    cursor = conn.execute(query, params)
    return [_pair_row(row) for row in cursor.fetchall()]


def _pair_row(row: tuple) -> Dict[str, Any]:
    return {
        'ticker_a': row[0],
        'ticker_b': row[1],
        'correlation': row[2],
        'sample_size': row[3],
        'period_days': row[4],
        'computed_at': row[5],
    }
