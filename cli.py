#!/usr/bin/env python3
"""
Main CLI for the correlation engine.
Usage: python cli.py COMMAND [options]
"""

import sys
import json
import logging
import argparse
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from analysis.correlation_cache import get_correlations, spawn_recompute
from analysis.correlation_job import compute_correlations
from analysis.correlation_matrix import ClusterPolicy, build_correlation_matrix, risk_insights
from analysis.errors import CorrelationError
from analysis.settings import CorrelationSettings, ConfigError, load_settings
from pipeline.correlations_dag import CorrelationsConfig, run_correlations
from storage.loaders import get_connection, init_database, upsert_instruments, upsert_prices
from storage.run_registry import list_recent_runs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Price correlation and risk-cluster engine',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python cli.py init-db
  python cli.py load-instruments data/instruments.csv
  python cli.py load-prices data/prices.csv
  python cli.py recompute PKN --days 90
  python cli.py recompute-market GPW
  python cli.py correlations PKN
  python cli.py heatmap --tickers PKN,PKO,PZU
        """
    )
    parser.add_argument('--db-path', help='Path to SQLite database (default: CORRELATION_DB_PATH)')
    parser.add_argument('--config', help='Universe YAML config (default: CORRELATION_UNIVERSE_CONFIG)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init-db', help='Create tables')

    p = sub.add_parser('load-prices', help='Load daily closes from CSV (ticker,date,close)')
    p.add_argument('csv_path')
    p.add_argument('--source', default='csv')

    p = sub.add_parser('load-instruments', help='Load instrument directory from CSV (ticker,name,market)')
    p.add_argument('csv_path')

    p = sub.add_parser('recompute', help='Recompute correlations for one ticker')
    p.add_argument('ticker')
    p.add_argument('--days', type=int, help='Lookback window in days')
    p.add_argument('--as-of', type=date.fromisoformat, help='Window end date (YYYY-MM-DD)')

    p = sub.add_parser('recompute-market', help='Recompute correlations for every ticker on a market')
    p.add_argument('market')
    p.add_argument('--days', type=int, help='Lookback window in days')

    p = sub.add_parser('correlations', help='Show cached correlations for a ticker')
    p.add_argument('ticker')
    p.add_argument('--wait', action='store_true', help='Wait for a triggered recompute to finish')

    p = sub.add_parser('heatmap', help='Correlation matrix with risk clusters and diversifiers')
    p.add_argument('--tickers', help='Comma-separated tickers (default: configured universe)')

    p = sub.add_parser('insights', help='Advisory high/low correlation pairs')
    p.add_argument('--tickers', help='Comma-separated tickers (default: configured universe)')

    p = sub.add_parser('runs', help='List recent correlation runs')
    p.add_argument('--limit', type=int, default=10)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if args.db_path:
        settings.db_path = args.db_path

    Path(settings.db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(settings.db_path)
    init_database(conn)

    try:
        return _dispatch(args, conn, settings)
    except (CorrelationError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def _dispatch(args: argparse.Namespace, conn, settings: CorrelationSettings) -> int:
    if args.command == 'init-db':
        print(f"Database ready: {settings.db_path}")

    elif args.command == 'load-prices':
        rows = load_price_csv(Path(args.csv_path), source=args.source)
        inserted, updated = upsert_prices(conn, rows)
        print(f"Prices loaded: {inserted} inserted, {updated} updated")

    elif args.command == 'load-instruments':
        df = pd.read_csv(args.csv_path)
        rows = df.where(pd.notna(df), None).to_dict('records')
        inserted, updated = upsert_instruments(conn, rows)
        print(f"Instruments loaded: {inserted} inserted, {updated} updated")

    elif args.command == 'recompute':
        result = compute_correlations(
            conn,
            args.ticker,
            period_days=args.days or settings.period_days,
            as_of=args.as_of,
            max_peers=settings.max_peers,
            top_n=settings.top_n,
            min_overlap=settings.min_overlap
        )
        _print_json(result)

    elif args.command == 'recompute-market':
        config = CorrelationsConfig(market=args.market, period_days=args.days or settings.period_days)
        result = run_correlations(config, conn)
        print(f"Run {result['run_id']}: {result['status'].upper()}")
        print(f"   Tickers: {result['tickers_attempted']}")
        print(f"   Completed / skipped / failed: "
              f"{result['completed']} / {result['skipped']} / {result['failed']}")
        print(f"   Rows written: {result['rows_written']}")

    elif args.command == 'correlations':
        triggered = []

        def trigger(ticker: str):
            triggered.append(spawn_recompute(ticker, settings.db_path, settings.period_days))

        rows = get_correlations(conn, args.ticker, trigger=trigger, stale_after=settings.stale_after)
        if not rows:
            print(f"No correlations stored for {args.ticker.upper()} yet; recompute triggered")
        _print_json(rows)
        if args.wait:
            for thread in triggered:
                thread.join()

    elif args.command == 'heatmap':
        policy = ClusterPolicy(settings.risk_threshold, settings.diversifier_threshold)
        _print_json(build_correlation_matrix(
            conn, args.tickers, policy=policy, default_universe=settings.universe
        ))

    elif args.command == 'insights':
        policy = ClusterPolicy(settings.advisory_risk_threshold, settings.advisory_diversifier_threshold)
        _print_json(risk_insights(
            conn, args.tickers, policy=policy, default_universe=settings.universe
        ))

    elif args.command == 'runs':
        for run in list_recent_runs(conn, limit=args.limit):
            duration = f"{run['duration_seconds']}s" if run['duration_seconds'] is not None else '-'
            print(f"{run['run_id']:>5}  {run['dag_name']:<20} {run['status'].value:<10} "
                  f"{run['started_at']}  {duration}  in={run['rows_in']} out={run['rows_out']}")

    return 0


def load_price_csv(csv_path: Path, source: str = 'csv') -> List[Dict[str, Any]]:
    """
    Read a ticker,date,close CSV into price rows.

    Rows with a missing or non-positive close are dropped.
    """
    df = pd.read_csv(csv_path)

    missing = {'ticker', 'date', 'close'} - set(df.columns)
    if missing:
        raise ValueError(f"CSV missing required columns: {sorted(missing)}")

    df = df.dropna(subset=['ticker', 'date', 'close'])
    df = df[df['close'] > 0]

    ingested_at = datetime.now()
    return [
        {
            'ticker': str(row.ticker).strip().upper(),
            'date': pd.to_datetime(row.date).date(),
            'close': float(row.close),
            'source': source,
            'ingested_at': ingested_at,
        }
        for row in df.itertuples(index=False)
    ]


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


if __name__ == '__main__':
    sys.exit(main())
