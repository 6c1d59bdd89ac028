"""
Correlation batch job - SQLite prices to price_correlations rows.
Queries the directory and price history, calls pure functions, replaces stored rows.
"""

import logging
import sqlite3
import pandas as pd
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

from analysis.calculations.correlation import pearson
from analysis.calculations.returns import aligned_log_returns
from analysis.errors import InstrumentNotFoundError, InvalidInputError, UpstreamError
from analysis.tickers import normalize_ticker
from storage.correlation_store import replace_correlations
from storage.directory import get_market, list_peers

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 90
MAX_PERIOD_DAYS = 365 * 3
MAX_PEERS = 50
TOP_N = 30
MIN_TARGET_CLOSES = 5
MIN_OVERLAP_DAYS = 10

# Errors surfaced by sqlite3 directly or through pandas.read_sql_query
_STORE_ERRORS = (sqlite3.Error, pd.errors.DatabaseError)


def compute_correlations(
    conn: sqlite3.Connection,
    ticker: str,
    period_days: Optional[int] = None,
    as_of: Optional[date] = None,
    max_peers: int = MAX_PEERS,
    top_n: int = TOP_N,
    min_overlap: int = MIN_OVERLAP_DAYS
) -> Dict[str, Any]:
    """
    Recompute and store the top correlations of one ticker against its venue peers.

    Steps:
    1. Resolve the ticker's market
    2. List peers on the same market
    3. Fetch closes for ticker + peers over [as_of - period_days, as_of]
    4. Align each peer with the ticker on exact trading dates
    5. Log returns on both sides, Pearson correlation
    6. Rank by |r| and keep the top_n
    7. Replace the ticker's stored rows in one transaction

    Args:
        conn: SQLite database connection
        ticker: Target ticker
        period_days: Lookback window in calendar days (default 90)
        as_of: Window end date (defaults to today)
        max_peers: Cap on peers considered
        top_n: Rows kept per ticker
        min_overlap: Minimum common trading dates per pair

    Returns:
        Outcome dictionary. status is 'completed' when rows were written,
        'skipped' with a message when there was nothing to compute.

    Raises:
        InvalidInputError: Missing or malformed ticker / period
        InstrumentNotFoundError: Ticker absent from the instrument directory
        UpstreamError: Store could not be read or written
    """
    ticker = normalize_ticker(ticker)
    period_days = _validate_period(period_days)

    if as_of is None:
        as_of = date.today()
    since = as_of - timedelta(days=period_days)

    start_time = datetime.now()

    try:
        market = get_market(conn, ticker)
        if market is None:
            raise InstrumentNotFoundError(f"Ticker {ticker} not found")

        peers = list_peers(conn, market, exclude=ticker, limit=max_peers)
        if not peers:
            return _skipped(ticker, 'no peers', period_days, start_time)

        price_df = _query_closes(conn, [ticker] + peers, since, as_of)
    except _STORE_ERRORS as e:
        raise UpstreamError(f"Failed to load data for {ticker}: {e}") from e

    if price_df.empty:
        return _skipped(ticker, 'no price data', period_days, start_time)

    closes = price_df.pivot(index='date', columns='ticker', values='close').sort_index()

    target_count = int(closes[ticker].notna().sum()) if ticker in closes.columns else 0
    if target_count < MIN_TARGET_CLOSES:
        logger.info(f"{ticker}: only {target_count} closes in {period_days}d window")
        return _skipped(ticker, 'insufficient price data', period_days, start_time)

    results = _correlate_peers(closes, ticker, peers, min_overlap)

    # Stable sort keeps peer listing order among equal |r|
    results.sort(key=lambda r: abs(r['correlation']), reverse=True)
    top = results[:top_n]

    if not top:
        return _skipped(ticker, 'no correlations computed', period_days, start_time)

    computed_at = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    rows = [
        {
            'ticker_b': r['ticker_b'],
            'correlation': round(r['correlation'], 4),
            'sample_size': r['sample_size'],
            'period_days': period_days,
            'computed_at': computed_at,
        }
        for r in top
    ]

    try:
        written = replace_correlations(conn, ticker, rows)
    except sqlite3.Error as e:
        logger.error(f"Upsert error for {ticker}: {e}")
        raise UpstreamError(f"Failed to store correlations for {ticker}: {e}") from e

    logger.info(f"{ticker}: computed {written} correlations vs {len(peers)} peers")

    return {
        'ticker': ticker,
        'status': 'completed',
        'peers_checked': len(results),
        'correlations_written': written,
        'top5': [
            {'ticker': r['ticker_b'], 'correlation': round(r['correlation'], 3)}
            for r in top[:5]
        ],
        'period_days': period_days,
        'computed_at': computed_at,
        'duration_seconds': (datetime.now() - start_time).total_seconds()
    }


def _correlate_peers(
    closes: pd.DataFrame,
    ticker: str,
    peers: List[str],
    min_overlap: int
) -> List[Dict[str, Any]]:
    """
    Correlate the target column against every peer column.

    Pairs are aligned on exact dates (rows where both closes exist),
    never by position, so a trading day missing on one side drops out
    of that pair only.
    """
    results = []

    for peer in peers:
        if peer not in closes.columns:
            continue

        pair = closes[[ticker, peer]].dropna()
        if len(pair) < min_overlap:
            continue

        target_returns, peer_returns = aligned_log_returns(
            pair[ticker].tolist(), pair[peer].tolist()
        )

        r = pearson(target_returns, peer_returns)
        if r is not None:
            results.append({
                'ticker_b': peer,
                'correlation': r,
                'sample_size': len(target_returns),
            })

    return results


def _query_closes(
    conn: sqlite3.Connection,
    tickers: List[str],
    start_date: date,
    end_date: date
) -> pd.DataFrame:
    """
    Query daily closes for a set of tickers within a date window.

    Returns:
        DataFrame with ticker, date, close ordered by date ascending
    """
    placeholders = ','.join('?' for _ in tickers)
    query = f"""
        SELECT ticker, date, close
        FROM prices
        WHERE ticker IN ({placeholders}) AND date >= ? AND date <= ?
        ORDER BY date ASC
    """
    params = list(tickers) + [start_date.isoformat(), end_date.isoformat()]

    return pd.read_sql_query(query, conn, params=params)


def _validate_period(period_days: Optional[int]) -> int:
    if period_days is None:
        return DEFAULT_PERIOD_DAYS

    if isinstance(period_days, bool) or not isinstance(period_days, int):
        raise InvalidInputError(f"period_days must be an integer, got {period_days!r}")

    if period_days <= 0 or period_days > MAX_PERIOD_DAYS:
        raise InvalidInputError(
            f"period_days must be between 1 and {MAX_PERIOD_DAYS}, got {period_days}"
        )

    return period_days


def _skipped(ticker: str, message: str, period_days: int, start_time: datetime) -> Dict[str, Any]:
    """No-op outcome: nothing written, previous rows untouched."""
    return {
        'ticker': ticker,
        'status': 'skipped',
        'message': message,
        'peers_checked': 0,
        'correlations_written': 0,
        'top5': [],
        'period_days': period_days,
        'duration_seconds': (datetime.now() - start_time).total_seconds()
    }
