"""
Runtime settings for the correlation engine.
Environment variables (optionally from .env) plus an optional YAML universe file.
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from analysis.tickers import DEFAULT_UNIVERSE, normalize_universe

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = './config/universe.yml'


class ConfigError(Exception):
    """Raised when settings cannot be loaded."""
    pass


@dataclass
class CorrelationSettings:
    """Resolved settings for jobs, readers and the HTTP layer."""
    db_path: str = './data/research.db'
    period_days: int = 90
    max_peers: int = 50
    top_n: int = 30
    min_overlap: int = 10
    stale_after_hours: Optional[float] = None
    universe: List[str] = field(default_factory=lambda: list(DEFAULT_UNIVERSE))
    risk_threshold: float = 0.70
    diversifier_threshold: float = -0.20
    advisory_risk_threshold: float = 0.65
    advisory_diversifier_threshold: float = -0.15

    def __post_init__(self):
        """Validate ranges."""
        self.validate()

    def validate(self) -> None:
        """
        Check value ranges; re-run after overrides are applied.

        Raises:
            ConfigError: If any setting is out of range
        """
        for name in ('period_days', 'max_peers', 'top_n'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        if self.min_overlap < 2:
            raise ConfigError(f"min_overlap must be at least 2, got {self.min_overlap}")

        if self.stale_after_hours is not None and self.stale_after_hours <= 0:
            raise ConfigError(
                f"stale_after_hours must be positive, got {self.stale_after_hours}"
            )

        if self.diversifier_threshold >= self.risk_threshold:
            raise ConfigError("diversifier_threshold must be below risk_threshold")

        if self.advisory_diversifier_threshold >= self.advisory_risk_threshold:
            raise ConfigError(
                "advisory_diversifier_threshold must be below advisory_risk_threshold"
            )

    @property
    def stale_after(self) -> Optional[timedelta]:
        """Staleness threshold for cached rows, or None when disabled."""
        if self.stale_after_hours is None:
            return None
        return timedelta(hours=self.stale_after_hours)


def load_universe_config(config_path: str) -> Dict[str, Any]:
    """
    Load universe and threshold overrides from a YAML file.

    Raises:
        ConfigError: If the file is missing or malformed
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigError(f"Universe config file not found: {config_path}")

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to load universe config: {e}") from e

    if not isinstance(config, dict) or 'universe' not in config:
        raise ConfigError("Universe config missing 'universe' section")

    return config


def load_settings(config_path: Optional[str] = None) -> CorrelationSettings:
    """
    Build settings from the environment and the optional YAML file.

    An explicitly given config_path must exist; the default path is
    used only when present.

    Raises:
        ConfigError: If a value cannot be parsed
    """
    try:
        stale_hours = os.getenv('CORRELATION_STALE_AFTER_HOURS')
        settings = CorrelationSettings(
            db_path=os.getenv('CORRELATION_DB_PATH', './data/research.db'),
            period_days=int(os.getenv('CORRELATION_PERIOD_DAYS', '90')),
            max_peers=int(os.getenv('CORRELATION_MAX_PEERS', '50')),
            top_n=int(os.getenv('CORRELATION_TOP_N', '30')),
            min_overlap=int(os.getenv('CORRELATION_MIN_OVERLAP', '10')),
            stale_after_hours=float(stale_hours) if stale_hours else None,
        )
    except ValueError as e:
        raise ConfigError(f"Invalid correlation setting: {e}") from e

    if config_path is None:
        config_path = os.getenv('CORRELATION_UNIVERSE_CONFIG', DEFAULT_CONFIG_PATH)
        if not Path(config_path).exists():
            logger.debug(f"No universe config at {config_path}, using defaults")
            return settings

    config = load_universe_config(config_path)
    settings.universe = normalize_universe(config['universe'], default=DEFAULT_UNIVERSE)

    thresholds = config.get('thresholds') or {}
    for key in ('risk_threshold', 'diversifier_threshold',
                'advisory_risk_threshold', 'advisory_diversifier_threshold'):
        if key in thresholds:
            try:
                setattr(settings, key, float(thresholds[key]))
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid threshold {key}: {thresholds[key]!r}") from e

    settings.validate()
    return settings
