"""
Correlations DAG - scheduled recomputation over a market or ticker list.
Composes: Directory → Batch job per ticker → Track.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Any, List, Optional

from analysis.correlation_job import DEFAULT_PERIOD_DAYS, compute_correlations
from analysis.errors import CorrelationError
from storage.directory import list_market_tickers
from storage.run_registry import start_run, finish_run, RunStatus

logger = logging.getLogger(__name__)

DAG_NAME = 'price_correlations'


@dataclass
class CorrelationsConfig:
    """Configuration for a correlations run."""
    market: Optional[str] = None
    tickers: Optional[List[str]] = None
    period_days: int = DEFAULT_PERIOD_DAYS
    as_of: Optional[date] = None

    def __post_init__(self):
        """Validate and set defaults."""
        if not self.market and not self.tickers:
            raise ValueError("either market or tickers must be given")

        if self.market and self.tickers:
            raise ValueError("market and tickers are mutually exclusive")

        if self.period_days <= 0:
            raise ValueError("period_days must be positive")

        if self.as_of is None:
            self.as_of = date.today()


def run_correlations(config: CorrelationsConfig, conn: sqlite3.Connection) -> Dict[str, Any]:
    """
    Recompute correlations for every ticker in scope.

    A CorrelationError for one ticker is recorded and the run moves on.
    Anything else (an unlistable market, malformed price rows) ends the
    run as FAILED with the error message kept in the registry.

    Args:
        config: Run configuration
        conn: SQLite database connection

    Returns:
        Dictionary with run results and per-ticker outcomes
    """
    run_id = start_run(conn, DAG_NAME)
    start_time = datetime.now()

    result = {
        'run_id': run_id,
        'market': config.market,
        'as_of': config.as_of,
        'status': 'running',
        'tickers_attempted': 0,
        'completed': 0,
        'skipped': 0,
        'failed': 0,
        'rows_written': 0,
        'results': [],
        'error_message': None
    }

    try:
        tickers = config.tickers or list_market_tickers(conn, config.market)

        for ticker in tickers:
            result['tickers_attempted'] += 1
            try:
                outcome = compute_correlations(
                    conn,
                    ticker,
                    period_days=config.period_days,
                    as_of=config.as_of
                )
            except CorrelationError as e:
                logger.warning(f"Correlation job failed for {ticker}: {e}")
                outcome = {'ticker': ticker, 'status': 'failed', 'error_message': str(e)}

            result[outcome['status']] += 1
            result['rows_written'] += outcome.get('correlations_written', 0)
            result['results'].append(outcome)

        finish_run(
            conn=conn,
            run_id=run_id,
            status=RunStatus.COMPLETED,
            finished_at=datetime.now(),
            rows_in=result['tickers_attempted'],
            rows_out=result['rows_written']
        )

        logger.info(
            f"Correlations run {run_id}: {result['completed']} completed, "
            f"{result['skipped']} skipped, {result['failed']} failed"
        )

        result['status'] = 'completed'

    except Exception as e:
        error_message = f"{type(e).__name__}: {e}"
        logger.error(f"Correlations run {run_id} failed: {error_message}")

        finish_run(
            conn=conn,
            run_id=run_id,
            status=RunStatus.FAILED,
            finished_at=datetime.now(),
            rows_in=result['tickers_attempted'],
            rows_out=result['rows_written'],
            error_message=error_message
        )

        result['status'] = 'failed'
        result['error_message'] = error_message

    result['duration_seconds'] = (datetime.now() - start_time).total_seconds()
    return result
