"""
Correlation cache reader - serves stored rows, triggers background recomputation.
The read path never waits for, or fails because of, a recomputation.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from analysis.correlation_job import compute_correlations
from analysis.errors import UpstreamError
from analysis.settings import load_settings
from analysis.tickers import normalize_ticker
from storage.correlation_store import read_correlations
from storage.loaders import get_connection

logger = logging.getLogger(__name__)

RecomputeTrigger = Callable[[str], Any]


def get_correlations(
    conn: sqlite3.Connection,
    ticker: str,
    trigger: Optional[RecomputeTrigger] = None,
    stale_after: Optional[timedelta] = None,
    now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """
    Return stored correlations for a ticker, sorted by correlation descending.

    An empty result fires the recompute trigger and returns immediately:
    empty means "not computed yet", not "no peers". When stale_after is
    set and the newest row is older than that, the stale rows are
    returned and a recompute is fired as well.

    Args:
        conn: SQLite connection
        ticker: Ticker to read
        trigger: Callable started with the ticker; its result is discarded.
            Defaults to a background thread against the configured database.
        stale_after: Age after which stored rows are refreshed in the background
        now: Reference time for the staleness check (defaults to current UTC)

    Returns:
        List of {peer, correlation, sample_size, computed_at}

    Raises:
        InvalidInputError: Missing or malformed ticker
        UpstreamError: Store could not be read
    """
    ticker = normalize_ticker(ticker)

    try:
        rows = read_correlations(conn, ticker)
    except sqlite3.Error as e:
        raise UpstreamError(f"Failed to read correlations for {ticker}: {e}") from e

    if trigger is None:
        trigger = _default_trigger

    if not rows:
        logger.info(f"No cached correlations for {ticker}, triggering recompute")
        _fire_and_forget(trigger, ticker)
    elif stale_after is not None and _is_stale(rows, stale_after, now):
        logger.info(f"Cached correlations for {ticker} are stale, triggering recompute")
        _fire_and_forget(trigger, ticker)

    return rows


def spawn_recompute(
    ticker: str,
    db_path: str,
    period_days: Optional[int] = None
) -> threading.Thread:
    """
    Run the batch job for one ticker on a daemon thread.

    The thread opens its own connection. Failures are logged and never
    reach the caller.

    Returns:
        The started thread (callers normally ignore it)
    """
    def _run() -> None:
        conn = None
        try:
            conn = get_connection(db_path)
            outcome = compute_correlations(conn, ticker, period_days=period_days)
            logger.info(
                f"Background recompute for {ticker}: {outcome['status']} "
                f"({outcome.get('message') or outcome['correlations_written']})"
            )
        except Exception:
            logger.exception(f"Background recompute failed for {ticker}")
        finally:
            if conn is not None:
                conn.close()

    thread = threading.Thread(target=_run, name=f"recompute-{ticker}", daemon=True)
    thread.start()
    return thread


def _default_trigger(ticker: str) -> threading.Thread:
    settings = load_settings()
    return spawn_recompute(ticker, settings.db_path, settings.period_days)


def _fire_and_forget(trigger: RecomputeTrigger, ticker: str) -> None:
    try:
        trigger(ticker)
    except Exception:
        logger.exception(f"Failed to trigger recompute for {ticker}")


def _is_stale(
    rows: List[Dict[str, Any]],
    stale_after: timedelta,
    now: Optional[datetime] = None
) -> bool:
    """True when the newest computed_at is older than stale_after."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    timestamps = [_parse_computed_at(r['computed_at']) for r in rows if r.get('computed_at')]
    if not timestamps:
        return True

    return now - max(timestamps) > stale_after


def _parse_computed_at(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace(' ', 'T'))
    # Naive timestamps are stored as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
