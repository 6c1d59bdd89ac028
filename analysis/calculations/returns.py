"""
Returns calculation utilities.
Pure functions turning daily closes into daily log returns.
"""

import numpy as np
from typing import List, Sequence


class ReturnsError(Exception):
    """Raised when returns calculation fails."""
    pass


def daily_log_returns(closes: Sequence[float]) -> np.ndarray:
    """
    Calculate daily log returns from consecutive closes.

    Formula: r_i = ln(P_i / P_{i-1})

    A non-positive close on either side of a step yields 0.0 for that
    step instead of failing the series, so one bad tick does not
    discard an otherwise usable history.

    Args:
        closes: Closing prices in chronological order

    Returns:
        Numpy array of log returns (length = len(closes) - 1)

    Raises:
        ReturnsError: If fewer than 2 closes are given

    Example:
        closes = [100, 110, 0, 121]
        Returns: [ln(1.1), 0.0, 0.0]
    """
    if len(closes) < 2:
        raise ReturnsError("Insufficient data: need at least 2 prices")

    prices = np.asarray(closes, dtype=float)
    previous = prices[:-1]
    current = prices[1:]

    returns = np.zeros(len(previous))
    valid = (previous > 0) & (current > 0)
    returns[valid] = np.log(current[valid] / previous[valid])

    return returns


def aligned_log_returns(
    closes_a: Sequence[float],
    closes_b: Sequence[float]
) -> List[np.ndarray]:
    """
    Log returns for two close series already aligned on the same dates.

    Each side is transformed independently, so the i-th return of both
    series covers the same pair of trading dates.

    Raises:
        ReturnsError: If the series differ in length or are too short
    """
    if len(closes_a) != len(closes_b):
        raise ReturnsError(
            f"Aligned series must have same length ({len(closes_a)} != {len(closes_b)})"
        )

    return [daily_log_returns(closes_a), daily_log_returns(closes_b)]
