"""
Instrument directory queries - venue lookup, peer listing and display names.
"""

import sqlite3
from typing import Dict, List, Optional


def get_market(conn: sqlite3.Connection, ticker: str) -> Optional[str]:
    """Return the trading venue of a ticker, or None if it is not listed."""
    cursor = conn.execute(
        "SELECT market FROM instruments WHERE ticker = ?", (ticker,)
    )
    row = cursor.fetchone()
    return row[0] if row else None


def list_peers(
    conn: sqlite3.Connection,
    market: str,
    exclude: str,
    limit: int = 50
) -> List[str]:
    """
    List tickers sharing a venue, excluding one ticker.

    Ordered by ticker so repeated runs see the same peer set.
    """
    cursor = conn.execute("""
        SELECT ticker FROM instruments
        WHERE market = ? AND ticker != ?
        ORDER BY ticker ASC
        LIMIT ?
    """, (market, exclude, limit))
    return [row[0] for row in cursor.fetchall()]


def list_market_tickers(conn: sqlite3.Connection, market: str) -> List[str]:
    """List every ticker listed on a venue."""
    cursor = conn.execute(
        "SELECT ticker FROM instruments WHERE market = ? ORDER BY ticker ASC",
        (market,)
    )
    return [row[0] for row in cursor.fetchall()]


def get_names(conn: sqlite3.Connection, tickers: List[str]) -> Dict[str, str]:
    """Map tickers to display names; unnamed or unknown tickers are omitted."""
    if not tickers:
        return {}

    placeholders = ','.join('?' for _ in tickers)
    cursor = conn.execute(
        f"SELECT ticker, name FROM instruments WHERE ticker IN ({placeholders})",
        list(tickers)
    )
    return {ticker: name for ticker, name in cursor.fetchall() if name}
