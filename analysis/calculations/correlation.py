"""
Pairwise correlation estimator.
Pearson correlation over two return series aligned on common trading dates.
"""

import math
import numpy as np
from typing import Optional, Sequence


MIN_SAMPLE_SIZE = 5


def pearson(xs: Sequence[float], ys: Sequence[float]) -> Optional[float]:
    """
    Calculate the Pearson correlation coefficient of two aligned series.

    Formula: r = (nΣxy - ΣxΣy) / sqrt((nΣx² - (Σx)²)(nΣy² - (Σy)²))

    Args:
        xs: First return series
        ys: Second return series, same dates as xs

    Returns:
        Correlation in [-1, 1], or None when the series differ in length,
        have fewer than MIN_SAMPLE_SIZE points, contain non-finite values,
        or either one has zero variance
    """
    if len(xs) != len(ys) or len(xs) < MIN_SAMPLE_SIZE:
        return None

    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)

    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        return None

    # Constant series
    if np.ptp(x) == 0 or np.ptp(y) == 0:
        return None

    n = len(x)
    sum_x = float(x.sum())
    sum_y = float(y.sum())
    sum_xy = float((x * y).sum())
    sum_x2 = float((x * x).sum())
    sum_y2 = float((y * y).sum())

    var_x = n * sum_x2 - sum_x * sum_x
    var_y = n * sum_y2 - sum_y * sum_y

    # Cancellation can leave a tiny negative term for near-constant input
    if var_x <= 0 or var_y <= 0:
        return None

    denom = math.sqrt(var_x * var_y)
    if denom == 0:
        return None

    r = (n * sum_xy - sum_x * sum_y) / denom

    # Rounding can overshoot the bound by a few ulps
    return max(-1.0, min(1.0, r))
