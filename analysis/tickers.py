"""
Ticker normalization for request inputs.
"""

from typing import Iterable, List, Optional, Union

from analysis.errors import InvalidInputError


MAX_UNIVERSE_SIZE = 25

# Large WIG20 constituents plus a few liquid mid-caps
DEFAULT_UNIVERSE = [
    "PKO", "PKN", "PZU", "KGH", "PEO", "SPL", "LPP", "DNP", "ALE", "CDR",
    "JSW", "PGE", "ENA", "ATT", "CPS", "MBK", "BDX", "KRU", "XTB", "GPW",
]

_ALLOWED_CHARS = set('ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789.-')


def normalize_ticker(ticker: Optional[str]) -> str:
    """
    Uppercase and validate a single ticker symbol.

    Raises:
        InvalidInputError: If the ticker is missing or malformed
    """
    if ticker is None or not isinstance(ticker, str) or not ticker.strip():
        raise InvalidInputError("ticker required")

    symbol = ticker.strip().upper()

    if len(symbol) > 10:
        raise InvalidInputError(f"Ticker too long (max 10 characters): {symbol}")

    if not set(symbol).issubset(_ALLOWED_CHARS):
        raise InvalidInputError(f"Ticker contains invalid characters: {symbol}")

    return symbol


def normalize_universe(
    tickers: Optional[Union[str, Iterable[str]]],
    default: Optional[List[str]] = None,
    limit: int = MAX_UNIVERSE_SIZE
) -> List[str]:
    """
    Turn a caller-supplied ticker list into an ordered, deduplicated universe.

    Accepts a comma-separated string or an iterable. Blank entries are
    dropped; an empty result falls back to the default universe.

    Raises:
        InvalidInputError: If any entry is malformed
    """
    if isinstance(tickers, str):
        tickers = tickers.split(',')

    universe: List[str] = []
    for raw in tickers or []:
        if raw is None or not str(raw).strip():
            continue
        symbol = normalize_ticker(str(raw))
        if symbol not in universe:
            universe.append(symbol)

    if not universe:
        universe = list(default if default is not None else DEFAULT_UNIVERSE)

    return universe[:limit]
