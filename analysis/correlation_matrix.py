"""
Correlation matrix assembler and risk-cluster classifier.
Reads stored pairs for an instrument universe; never computes correlations.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Iterable, List, Optional, Tuple, Union

from analysis.errors import UpstreamError
from analysis.tickers import normalize_universe
from storage.correlation_store import read_pairs_filtered, read_pairs_within
from storage.directory import get_names

logger = logging.getLogger(__name__)

Matrix = List[List[Optional[float]]]
PairKey = Tuple[str, str]


@dataclass(frozen=True)
class ClusterPolicy:
    """Thresholds and list size for pair classification."""
    risk_threshold: float = 0.70
    diversifier_threshold: float = -0.20
    limit: int = 5

    def __post_init__(self):
        if self.diversifier_threshold >= self.risk_threshold:
            raise ValueError("diversifier_threshold must be below risk_threshold")
        if self.limit <= 0:
            raise ValueError("limit must be positive")


DEFAULT_POLICY = ClusterPolicy()
ADVISORY_POLICY = ClusterPolicy(risk_threshold=0.65, diversifier_threshold=-0.15)


def build_correlation_matrix(
    conn: sqlite3.Connection,
    tickers: Optional[Union[str, Iterable[str]]] = None,
    policy: ClusterPolicy = DEFAULT_POLICY,
    default_universe: Optional[List[str]] = None
) -> Dict[str, Any]:
    """
    Build a symmetric correlation matrix over a ticker universe.

    Args:
        conn: SQLite connection
        tickers: Requested tickers (list or comma-separated); deduplicated
            and capped at 25, default universe when empty
        policy: Risk-cluster / diversifier thresholds
        default_universe: Fallback universe (defaults to the built-in list)

    Returns:
        Dictionary with instruments, matrix, labels, risk_clusters,
        diversifiers, computed_at and direction_conflicts

    Raises:
        InvalidInputError: Malformed ticker in the request
        UpstreamError: Store could not be read
    """
    universe = normalize_universe(tickers, default=default_universe)

    try:
        rows = read_pairs_within(conn, universe)
        labels = get_names(conn, universe)
    except sqlite3.Error as e:
        raise UpstreamError(f"Failed to read correlation matrix: {e}") from e

    pairs, conflicts = undirected_pairs(rows, order=universe)
    if conflicts:
        logger.warning(
            f"{len(conflicts)} pair(s) stored in both directions with different values; "
            f"using the most recent: {conflicts}"
        )

    matrix = assemble_matrix(universe, pairs)
    risk_clusters, diversifiers = classify_pairs(universe, matrix, policy)

    timestamps = [row['computed_at'] for row in pairs.values() if row.get('computed_at')]

    return {
        'instruments': universe,
        'matrix': matrix,
        'labels': labels,
        'risk_clusters': risk_clusters,
        'diversifiers': diversifiers,
        'computed_at': max(timestamps, key=_timestamp_key) if timestamps else None,
        'direction_conflicts': [list(key) for key in conflicts],
    }


def undirected_pairs(
    rows: List[Dict[str, Any]],
    order: Optional[List[str]] = None
) -> Tuple[Dict[PairKey, Dict[str, Any]], List[PairKey]]:
    """
    Fold directional rows into one row per unordered pair.

    When both (a, b) and (b, a) are stored, the row with the more recent
    computed_at wins. On equal timestamps the row whose ticker_a comes
    first in order wins (alphabetically first when order does not
    decide), independent of the store's scan order. Pairs whose two
    directions disagree on the value are reported as conflicts.

    Returns:
        Tuple of (pair map keyed by sorted ticker tuple, conflicting keys)
    """
    rank = {ticker: i for i, ticker in enumerate(order or [])}

    def preference(key: PairKey, row: Dict[str, Any]) -> Tuple[datetime, int, bool]:
        return (
            _timestamp_key(row.get('computed_at')),
            -rank.get(row['ticker_a'], len(rank)),
            row['ticker_a'] == key[0],
        )

    pairs: Dict[PairKey, Dict[str, Any]] = {}
    conflicts: List[PairKey] = []

    for row in rows:
        if row['ticker_a'] == row['ticker_b']:
            continue

        key = tuple(sorted((row['ticker_a'], row['ticker_b'])))
        existing = pairs.get(key)

        if existing is None:
            pairs[key] = row
            continue

        if existing['correlation'] != row['correlation'] and key not in conflicts:
            conflicts.append(key)

        if preference(key, row) > preference(key, existing):
            pairs[key] = row

    return pairs, sorted(conflicts)


def assemble_matrix(
    tickers: List[str],
    pairs: Dict[PairKey, Dict[str, Any]]
) -> Matrix:
    """
    Dense N x N matrix: 1.0 on the diagonal, pair correlation or None elsewhere.
    """
    n = len(tickers)
    matrix: Matrix = [[None] * n for _ in range(n)]

    for i in range(n):
        matrix[i][i] = 1.0

    for i in range(n):
        for j in range(i + 1, n):
            row = pairs.get(tuple(sorted((tickers[i], tickers[j]))))
            if row is not None:
                matrix[i][j] = row['correlation']
                matrix[j][i] = row['correlation']

    return matrix


def classify_pairs(
    tickers: List[str],
    matrix: Matrix,
    policy: ClusterPolicy = DEFAULT_POLICY
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Split the upper triangle into risk clusters and diversifiers.

    Risk clusters: correlation >= risk_threshold, highest first.
    Diversifiers: correlation <= diversifier_threshold, most negative first.
    Ties keep matrix order. Each list is cut to policy.limit entries.
    """
    risk_clusters = []
    diversifiers = []

    n = len(tickers)
    for i in range(n):
        for j in range(i + 1, n):
            corr = matrix[i][j]
            if corr is None:
                continue

            entry = {
                'instrument_a': tickers[i],
                'instrument_b': tickers[j],
                'correlation': corr,
            }
            if corr >= policy.risk_threshold:
                risk_clusters.append(entry)
            elif corr <= policy.diversifier_threshold:
                diversifiers.append(entry)

    risk_clusters.sort(key=lambda e: e['correlation'], reverse=True)
    diversifiers.sort(key=lambda e: e['correlation'])

    return risk_clusters[:policy.limit], diversifiers[:policy.limit]


def risk_insights(
    conn: sqlite3.Connection,
    tickers: Optional[Union[str, Iterable[str]]] = None,
    policy: ClusterPolicy = ADVISORY_POLICY,
    cluster_limit: int = 10,
    diversifier_limit: int = 5,
    default_universe: Optional[List[str]] = None
) -> Dict[str, Any]:
    """
    Advisory listing of strongly correlated and diverging pairs.

    Reads the stored rows directly with threshold filters, without
    building a matrix. Each unordered pair appears once.

    Returns:
        Dictionary with instruments, high_correlation, low_correlation
    """
    universe = normalize_universe(tickers, default=default_universe)

    try:
        high = read_pairs_filtered(
            conn, universe, min_correlation=policy.risk_threshold,
            ascending=False, limit=cluster_limit * 2
        )
        low = read_pairs_filtered(
            conn, universe, max_correlation=policy.diversifier_threshold,
            ascending=True, limit=diversifier_limit * 2
        )
    except sqlite3.Error as e:
        raise UpstreamError(f"Failed to read risk insights: {e}") from e

    return {
        'instruments': universe,
        'high_correlation': _dedupe_pairs(high)[:cluster_limit],
        'low_correlation': _dedupe_pairs(low)[:diversifier_limit],
    }


def _dedupe_pairs(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    entries = []
    for row in rows:
        key = tuple(sorted((row['ticker_a'], row['ticker_b'])))
        if key in seen:
            continue
        seen.add(key)
        entries.append({
            'instrument_a': row['ticker_a'],
            'instrument_b': row['ticker_b'],
            'correlation': row['correlation'],
        })
    return entries


def _timestamp_key(value: Optional[str]) -> datetime:
    """Sort key for stored ISO timestamps; missing values sort first."""
    if not value:
        return datetime.min
    parsed = datetime.fromisoformat(value.replace(' ', 'T'))
    # Compare on naive UTC wall time
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed
