"""
Tests for the correlation matrix assembler and cluster classifier.
Pure helpers on hand-built pairs plus store-backed assembly.
"""

import sqlite3
import pytest
from unittest.mock import patch

from analysis.correlation_matrix import (
    ADVISORY_POLICY,
    DEFAULT_POLICY,
    ClusterPolicy,
    assemble_matrix,
    build_correlation_matrix,
    classify_pairs,
    risk_insights,
    undirected_pairs,
)
from analysis.errors import InvalidInputError, UpstreamError
from analysis.tickers import DEFAULT_UNIVERSE
from storage.correlation_store import replace_correlations
from storage.loaders import init_database, upsert_instruments


def _pair(peer, corr, computed_at='2025-06-30T18:00:00+00:00'):
    return {
        'ticker_b': peer, 'correlation': corr, 'sample_size': 60,
        'period_days': 90, 'computed_at': computed_at
    }


def _row(a, b, corr, computed_at='2025-06-30T18:00:00+00:00'):
    return {'ticker_a': a, 'ticker_b': b, 'correlation': corr, 'computed_at': computed_at}


@pytest.fixture
def in_memory_db():
    """Create in-memory SQLite database for testing."""
    conn = sqlite3.connect(':memory:')
    init_database(conn)
    return conn


@pytest.fixture
def seeded_db(in_memory_db):
    """AAA-BBB stored as (AAA, BBB); AAA-CCC stored as (CCC, AAA)."""
    upsert_instruments(in_memory_db, [
        {'ticker': 'AAA', 'name': 'Alpha SA', 'market': 'GPW'},
        {'ticker': 'BBB', 'name': 'Beta SA', 'market': 'GPW'},
        {'ticker': 'CCC', 'name': 'Gamma SA', 'market': 'GPW'},
    ])
    replace_correlations(in_memory_db, 'AAA', [_pair('BBB', 0.82)])
    replace_correlations(in_memory_db, 'CCC', [
        _pair('AAA', -0.35, '2025-07-01T08:00:00+00:00'),
        _pair('BBB', 0.10)
    ])
    return in_memory_db


class TestBuildCorrelationMatrix:
    """Store-backed matrix assembly."""

    def test_diagonal_and_symmetry(self, seeded_db):
        result = build_correlation_matrix(seeded_db, ['AAA', 'BBB', 'CCC'])
        matrix = result['matrix']

        n = len(result['instruments'])
        for i in range(n):
            assert matrix[i][i] == 1
            for j in range(n):
                assert matrix[i][j] == matrix[j][i]

    def test_reverse_direction_discoverable(self, seeded_db):
        """A pair stored as (CCC, AAA) is found when AAA comes first."""
        result = build_correlation_matrix(seeded_db, ['AAA', 'CCC'])

        assert result['matrix'][0][1] == -0.35

    def test_missing_instrument_cells_null(self, seeded_db):
        """No row for ZZZ: its off-diagonal cells are None, diagonal still 1."""
        result = build_correlation_matrix(seeded_db, ['AAA', 'BBB', 'ZZZ'])
        matrix = result['matrix']

        assert result['instruments'] == ['AAA', 'BBB', 'ZZZ']
        assert matrix[2][2] == 1
        assert matrix[0][2] is None and matrix[2][0] is None
        assert matrix[1][2] is None and matrix[2][1] is None
        assert matrix[0][1] == 0.82

    def test_labels_and_computed_at(self, seeded_db):
        result = build_correlation_matrix(seeded_db, 'AAA,BBB,CCC')

        assert result['labels'] == {'AAA': 'Alpha SA', 'BBB': 'Beta SA', 'CCC': 'Gamma SA'}
        assert result['computed_at'] == '2025-07-01T08:00:00+00:00'

    def test_computed_at_null_without_rows(self, in_memory_db):
        result = build_correlation_matrix(in_memory_db, ['AAA', 'BBB'])

        assert result['computed_at'] is None
        assert result['risk_clusters'] == []
        assert result['diversifiers'] == []

    def test_clusters_from_store(self, seeded_db):
        result = build_correlation_matrix(seeded_db, ['AAA', 'BBB', 'CCC'])

        assert result['risk_clusters'] == [
            {'instrument_a': 'AAA', 'instrument_b': 'BBB', 'correlation': 0.82}
        ]
        assert result['diversifiers'] == [
            {'instrument_a': 'AAA', 'instrument_b': 'CCC', 'correlation': -0.35}
        ]

    def test_request_normalized(self, seeded_db):
        """Tickers are uppercased, deduplicated and order-preserving."""
        result = build_correlation_matrix(seeded_db, ['bbb', 'AAA', 'BBB', ' ', 'aaa'])

        assert result['instruments'] == ['BBB', 'AAA']

    def test_universe_capped_at_25(self, in_memory_db):
        tickers = [f'T{i:02d}' for i in range(40)]

        result = build_correlation_matrix(in_memory_db, tickers)

        assert result['instruments'] == tickers[:25]
        assert len(result['matrix']) == 25

    def test_default_universe(self, in_memory_db):
        result = build_correlation_matrix(in_memory_db)

        assert result['instruments'] == DEFAULT_UNIVERSE
        assert len(DEFAULT_UNIVERSE) == 20

    def test_custom_default_universe(self, in_memory_db):
        result = build_correlation_matrix(in_memory_db, '', default_universe=['XTB', 'GPW'])

        assert result['instruments'] == ['XTB', 'GPW']

    def test_invalid_ticker(self, in_memory_db):
        with pytest.raises(InvalidInputError):
            build_correlation_matrix(in_memory_db, ['AAA', 'B@D'])

    def test_store_failure(self, in_memory_db):
        with patch('analysis.correlation_matrix.read_pairs_within',
                   side_effect=sqlite3.OperationalError('database is locked')):
            with pytest.raises(UpstreamError):
                build_correlation_matrix(in_memory_db, ['AAA', 'BBB'])

    def test_direction_conflict_prefers_recent(self, seeded_db, caplog):
        """Both directions stored with different values: newest row wins, pair flagged."""
        replace_correlations(seeded_db, 'BBB', [_pair('AAA', 0.60, '2025-07-02T08:00:00+00:00')])

        result = build_correlation_matrix(seeded_db, ['AAA', 'BBB'])

        assert result['matrix'][0][1] == 0.60
        assert result['direction_conflicts'] == [['AAA', 'BBB']]
        assert 'both directions' in caplog.text

    def test_direction_tie_follows_requested_order(self, seeded_db):
        """Both directions share a timestamp: the first requested ticker's row is used."""
        replace_correlations(seeded_db, 'BBB', [_pair('AAA', 0.60)])

        assert build_correlation_matrix(seeded_db, ['AAA', 'BBB'])['matrix'][0][1] == 0.82
        assert build_correlation_matrix(seeded_db, ['BBB', 'AAA'])['matrix'][0][1] == 0.60


class TestUndirectedPairs:
    """Tests for undirected_pairs function."""

    def test_older_reverse_row_ignored(self):
        rows = [
            _row('AAA', 'BBB', 0.7, '2025-07-02T00:00:00+00:00'),
            _row('BBB', 'AAA', 0.5, '2025-07-01T00:00:00+00:00'),
        ]

        pairs, conflicts = undirected_pairs(rows)

        assert pairs[('AAA', 'BBB')]['correlation'] == 0.7
        assert conflicts == [('AAA', 'BBB')]

    def test_equal_timestamps_resolved_by_request_order(self):
        """Same computed_at: the earlier requested ticker leads, in either scan order."""
        forward = _row('AAA', 'BBB', 0.7)
        reverse = _row('BBB', 'AAA', 0.5)

        for rows in ([forward, reverse], [reverse, forward]):
            pairs, conflicts = undirected_pairs(rows, order=['BBB', 'AAA'])
            assert pairs[('AAA', 'BBB')]['correlation'] == 0.5
            assert conflicts == [('AAA', 'BBB')]

    def test_equal_timestamps_without_order(self):
        forward = _row('AAA', 'BBB', 0.7)
        reverse = _row('BBB', 'AAA', 0.5)

        for rows in ([forward, reverse], [reverse, forward]):
            pairs, _ = undirected_pairs(rows)
            assert pairs[('AAA', 'BBB')]['correlation'] == 0.7

    def test_agreeing_directions_not_flagged(self):
        rows = [_row('AAA', 'BBB', 0.7), _row('BBB', 'AAA', 0.7)]

        pairs, conflicts = undirected_pairs(rows)

        assert len(pairs) == 1
        assert conflicts == []

    def test_self_pairs_dropped(self):
        pairs, _ = undirected_pairs([_row('AAA', 'AAA', 1.0)])
        assert pairs == {}


class TestClassifyPairs:
    """Tests for classify_pairs function."""

    def _matrix(self, tickers, values):
        pairs = {
            tuple(sorted(k)): {'correlation': v} for k, v in values.items()
        }
        return assemble_matrix(tickers, pairs)

    def test_thresholds_inclusive(self):
        tickers = ['A', 'B', 'C', 'D']
        matrix = self._matrix(tickers, {
            ('A', 'B'): 0.70, ('A', 'C'): 0.69, ('B', 'C'): -0.20, ('C', 'D'): -0.19
        })

        risk, div = classify_pairs(tickers, matrix)

        assert [(e['instrument_a'], e['instrument_b']) for e in risk] == [('A', 'B')]
        assert [(e['instrument_a'], e['instrument_b']) for e in div] == [('B', 'C')]

    def test_sorted_and_capped_at_five(self):
        tickers = [f'T{i}' for i in range(8)]
        values = {}
        for i in range(8):
            for j in range(i + 1, 8):
                values[(tickers[i], tickers[j])] = 0.71 + 0.01 * (i + j) if (i + j) % 2 == 0 \
                    else -0.21 - 0.01 * (i + j)
        matrix = self._matrix(tickers, values)

        risk, div = classify_pairs(tickers, matrix)

        assert len(risk) == 5
        assert len(div) == 5
        risk_values = [e['correlation'] for e in risk]
        div_values = [e['correlation'] for e in div]
        assert risk_values == sorted(risk_values, reverse=True)
        assert div_values == sorted(div_values)
        assert max(risk_values) == max(v for v in values.values())
        assert min(div_values) == min(v for v in values.values())

    def test_lists_never_overlap(self):
        tickers = ['A', 'B', 'C', 'D', 'E']
        values = {
            ('A', 'B'): 0.95, ('A', 'C'): -0.50, ('A', 'D'): 0.10,
            ('B', 'C'): 0.71, ('B', 'E'): -0.90, ('D', 'E'): 0.00,
        }
        matrix = self._matrix(tickers, values)

        risk, div = classify_pairs(tickers, matrix)

        risk_keys = {(e['instrument_a'], e['instrument_b']) for e in risk}
        div_keys = {(e['instrument_a'], e['instrument_b']) for e in div}
        assert risk_keys.isdisjoint(div_keys)

    def test_advisory_policy_looser(self):
        tickers = ['A', 'B', 'C']
        matrix = self._matrix(tickers, {('A', 'B'): 0.66, ('B', 'C'): -0.16})

        risk, div = classify_pairs(tickers, matrix, DEFAULT_POLICY)
        assert risk == [] and div == []

        risk, div = classify_pairs(tickers, matrix, ADVISORY_POLICY)
        assert len(risk) == 1 and len(div) == 1

    def test_policy_rejects_overlapping_thresholds(self):
        with pytest.raises(ValueError, match="below risk_threshold"):
            ClusterPolicy(risk_threshold=0.1, diversifier_threshold=0.2)


class TestRiskInsights:
    """Advisory listing read straight from the store."""

    def test_filters_sorts_and_dedupes(self, in_memory_db):
        replace_correlations(in_memory_db, 'PKO', [
            _pair('PEO', 0.88), _pair('MBK', 0.66), _pair('CDR', -0.18), _pair('KGH', 0.20)
        ])
        replace_correlations(in_memory_db, 'PEO', [_pair('PKO', 0.88)])

        result = risk_insights(in_memory_db, ['PKO', 'PEO', 'MBK', 'CDR', 'KGH'])

        high = [(e['instrument_a'], e['instrument_b'], e['correlation']) for e in result['high_correlation']]
        low = [(e['instrument_a'], e['instrument_b'], e['correlation']) for e in result['low_correlation']]

        assert [h[2] for h in high] == [0.88, 0.66]
        assert low == [('PKO', 'CDR', -0.18)]

    def test_outside_universe_ignored(self, in_memory_db):
        replace_correlations(in_memory_db, 'PKO', [_pair('XYZ', 0.95)])

        result = risk_insights(in_memory_db, ['PKO', 'PEO'])

        assert result['high_correlation'] == []
