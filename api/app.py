"""
HTTP layer for the correlation engine.
Usage: uvicorn api.app:app
"""

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from dotenv import load_dotenv

# Load .env before settings are read
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from analysis.correlation_cache import get_correlations, spawn_recompute
from analysis.correlation_job import MAX_PERIOD_DAYS, compute_correlations
from analysis.correlation_matrix import ClusterPolicy, build_correlation_matrix, risk_insights
from analysis.errors import (
    CorrelationError,
    InstrumentNotFoundError,
    InvalidInputError,
    UpstreamError,
)
from analysis.settings import ConfigError, CorrelationSettings, load_settings
from storage.loaders import get_connection, init_database

logger = logging.getLogger(__name__)

app = FastAPI(title="Correlation Engine API")


class RecomputeRequest(BaseModel):
    ticker: str
    period_days: Optional[int] = Field(default=None, gt=0, le=MAX_PERIOD_DAYS)


def get_settings() -> CorrelationSettings:
    try:
        return load_settings()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        raise HTTPException(status_code=500, detail=f"Invalid configuration: {e}") from e


def get_db(settings: CorrelationSettings = Depends(get_settings)) -> Iterator[Any]:
    # Sync dependencies and handlers may run on different worker threads
    conn = get_connection(settings.db_path, check_same_thread=False)
    try:
        init_database(conn)
        yield conn
    finally:
        conn.close()


def get_trigger(settings: CorrelationSettings = Depends(get_settings)) -> Callable[[str], Any]:
    def trigger(ticker: str):
        return spawn_recompute(ticker, settings.db_path, settings.period_days)
    return trigger


def _http_error(error: CorrelationError) -> HTTPException:
    if isinstance(error, InvalidInputError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, InstrumentNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, UpstreamError):
        logger.error(f"Upstream failure: {error}")
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def _cluster_policy(risk_threshold: float, diversifier_threshold: float) -> ClusterPolicy:
    try:
        return ClusterPolicy(
            risk_threshold=risk_threshold,
            diversifier_threshold=diversifier_threshold,
        )
    except ValueError as e:
        logger.error(f"Invalid cluster thresholds: {e}")
        raise HTTPException(status_code=500, detail=f"Invalid cluster thresholds: {e}") from e


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/correlations")
def read_ticker_correlations(
    ticker: str = Query(default=""),
    conn=Depends(get_db),
    settings: CorrelationSettings = Depends(get_settings),
    trigger: Callable[[str], Any] = Depends(get_trigger),
) -> List[Dict[str, Any]]:
    """Stored correlations for one ticker; empty triggers a background recompute."""
    try:
        return get_correlations(conn, ticker, trigger=trigger, stale_after=settings.stale_after)
    except CorrelationError as e:
        raise _http_error(e) from e


@app.post("/correlations/recompute")
def recompute_ticker_correlations(
    req: RecomputeRequest,
    conn=Depends(get_db),
    settings: CorrelationSettings = Depends(get_settings),
) -> Dict[str, Any]:
    try:
        return compute_correlations(
            conn,
            req.ticker,
            period_days=req.period_days or settings.period_days,
            max_peers=settings.max_peers,
            top_n=settings.top_n,
            min_overlap=settings.min_overlap,
        )
    except CorrelationError as e:
        raise _http_error(e) from e


@app.get("/heatmap")
def read_heatmap(
    tickers: Optional[str] = Query(default=None),
    conn=Depends(get_db),
    settings: CorrelationSettings = Depends(get_settings),
) -> Dict[str, Any]:
    policy = _cluster_policy(settings.risk_threshold, settings.diversifier_threshold)
    try:
        return build_correlation_matrix(
            conn, tickers, policy=policy, default_universe=settings.universe
        )
    except CorrelationError as e:
        raise _http_error(e) from e


@app.get("/heatmap/insights")
def read_risk_insights(
    tickers: Optional[str] = Query(default=None),
    conn=Depends(get_db),
    settings: CorrelationSettings = Depends(get_settings),
) -> Dict[str, Any]:
    policy = _cluster_policy(
        settings.advisory_risk_threshold, settings.advisory_diversifier_threshold
    )
    try:
        return risk_insights(conn, tickers, policy=policy, default_universe=settings.universe)
    except CorrelationError as e:
        raise _http_error(e) from e
