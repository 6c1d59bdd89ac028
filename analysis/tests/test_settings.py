"""
Tests for settings loading and request normalization.
"""

import pytest
import yaml
from datetime import timedelta

from analysis.errors import InvalidInputError
from analysis.settings import ConfigError, CorrelationSettings, load_settings, load_universe_config
from analysis.tickers import DEFAULT_UNIVERSE, normalize_ticker, normalize_universe


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Unset correlation env vars and point the default config at nothing."""
    for name in [
        'CORRELATION_DB_PATH', 'CORRELATION_PERIOD_DAYS', 'CORRELATION_MAX_PEERS',
        'CORRELATION_TOP_N', 'CORRELATION_MIN_OVERLAP', 'CORRELATION_STALE_AFTER_HOURS',
    ]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('CORRELATION_UNIVERSE_CONFIG', str(tmp_path / 'missing.yml'))
    return monkeypatch


class TestLoadSettings:
    """Tests for load_settings function."""

    def test_defaults(self, clean_env):
        settings = load_settings()

        assert settings.db_path == './data/research.db'
        assert settings.period_days == 90
        assert settings.max_peers == 50
        assert settings.top_n == 30
        assert settings.min_overlap == 10
        assert settings.stale_after is None
        assert settings.universe == DEFAULT_UNIVERSE
        assert settings.risk_threshold == 0.70
        assert settings.advisory_diversifier_threshold == -0.15

    def test_env_overrides(self, clean_env):
        clean_env.setenv('CORRELATION_DB_PATH', '/tmp/corr.db')
        clean_env.setenv('CORRELATION_PERIOD_DAYS', '120')
        clean_env.setenv('CORRELATION_STALE_AFTER_HOURS', '12')

        settings = load_settings()

        assert settings.db_path == '/tmp/corr.db'
        assert settings.period_days == 120
        assert settings.stale_after == timedelta(hours=12)

    def test_invalid_env_value(self, clean_env):
        clean_env.setenv('CORRELATION_TOP_N', 'thirty')

        with pytest.raises(ConfigError, match="Invalid correlation setting"):
            load_settings()

    @pytest.mark.parametrize("name,value", [
        ('CORRELATION_MAX_PEERS', '-1'),
        ('CORRELATION_TOP_N', '-1'),
        ('CORRELATION_TOP_N', '0'),
        ('CORRELATION_PERIOD_DAYS', '0'),
        ('CORRELATION_MIN_OVERLAP', '1'),
        ('CORRELATION_STALE_AFTER_HOURS', '-5'),
    ])
    def test_out_of_range_env_value(self, clean_env, name, value):
        """Non-positive caps and windows are rejected at load time."""
        clean_env.setenv(name, value)

        with pytest.raises(ConfigError, match="must be"):
            load_settings()

    def test_inverted_yaml_thresholds(self, clean_env, tmp_path):
        config_path = tmp_path / 'universe.yml'
        with open(config_path, 'w') as f:
            yaml.dump({
                'universe': ['PKO'],
                'thresholds': {'risk_threshold': -0.5},
            }, f)

        with pytest.raises(ConfigError, match="below risk_threshold"):
            load_settings(str(config_path))

    def test_non_numeric_yaml_threshold(self, clean_env, tmp_path):
        config_path = tmp_path / 'universe.yml'
        with open(config_path, 'w') as f:
            yaml.dump({'universe': ['PKO'], 'thresholds': {'risk_threshold': 'high'}}, f)

        with pytest.raises(ConfigError, match="Invalid threshold"):
            load_settings(str(config_path))

    def test_direct_construction_validated(self):
        with pytest.raises(ConfigError):
            CorrelationSettings(max_peers=0)

    def test_yaml_overrides(self, clean_env, tmp_path):
        config_path = tmp_path / 'universe.yml'
        with open(config_path, 'w') as f:
            yaml.dump({
                'universe': ['xtb', 'GPW', 'XTB'],
                'thresholds': {'risk_threshold': 0.8, 'advisory_risk_threshold': 0.7},
            }, f)

        settings = load_settings(str(config_path))

        assert settings.universe == ['XTB', 'GPW']
        assert settings.risk_threshold == 0.8
        assert settings.advisory_risk_threshold == 0.7
        assert settings.diversifier_threshold == -0.20

    def test_explicit_missing_config(self, clean_env, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(str(tmp_path / 'nope.yml'))


class TestLoadUniverseConfig:
    """Tests for load_universe_config function."""

    def test_missing_universe_section(self, tmp_path):
        config_path = tmp_path / 'bad.yml'
        config_path.write_text('thresholds:\n  risk_threshold: 0.8\n')

        with pytest.raises(ConfigError, match="missing 'universe'"):
            load_universe_config(str(config_path))

    def test_invalid_yaml(self, tmp_path):
        config_path = tmp_path / 'broken.yml'
        config_path.write_text('universe: [unclosed')

        with pytest.raises(ConfigError, match="Failed to load"):
            load_universe_config(str(config_path))

    def test_shipped_config_loads(self):
        config = load_universe_config('./config/universe.yml')
        assert config['universe'] == DEFAULT_UNIVERSE


class TestTickerNormalization:
    """Tests for normalize_ticker and normalize_universe."""

    def test_normalize_ticker(self):
        assert normalize_ticker(' pkn ') == 'PKN'
        assert normalize_ticker('brk.b') == 'BRK.B'

    @pytest.mark.parametrize("value", [None, '', '   ', 'A B', 'ÄÖÜ', 'X' * 11, 42])
    def test_invalid_ticker(self, value):
        with pytest.raises(InvalidInputError):
            normalize_ticker(value)

    def test_universe_from_string(self):
        assert normalize_universe('pkn, pko,,PKN') == ['PKN', 'PKO']

    def test_universe_limit(self):
        assert normalize_universe([f'T{i}' for i in range(30)], limit=3) == ['T0', 'T1', 'T2']

    def test_universe_default(self):
        assert normalize_universe(None) == DEFAULT_UNIVERSE
        assert normalize_universe([]) == DEFAULT_UNIVERSE
