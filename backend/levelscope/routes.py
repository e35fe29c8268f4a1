"""
Levelscope: API Routes

All HTTP endpoints. Thin layer, delegates to the AnalysisEngine.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from levelscope.cache import DatasetCache
from levelscope.config import get_settings
from levelscope.data.binance_client import BinanceClient
from levelscope.engines.aggregator import MultiTimeframeAggregator
from levelscope.engines.analysis_engine import AnalysisEngine

# ──────────────────────────────────────────────
# Engine dependency
# ──────────────────────────────────────────────


@lru_cache
def get_engine() -> AnalysisEngine:
    """Process-wide engine over the Binance provider and one dataset cache."""
    settings = get_settings()
    aggregator = MultiTimeframeAggregator(
        BinanceClient(),
        DatasetCache(settings.cache_ttl_seconds),
        settings=settings,
    )
    return AnalysisEngine(aggregator, settings=settings)


class AnalysisRequest(BaseModel):
    """Body of an analysis request. ``options`` are DetectionConfig fields."""
    timeframes: Optional[list[str]] = None
    options: dict[str, Any] = Field(default_factory=dict)
    include_features: bool = False


def _split_timeframes(raw: Optional[str]) -> Optional[list[str]]:
    if not raw:
        return None
    return [tf.strip() for tf in raw.split(",") if tf.strip()]


# ──────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────

health_router = APIRouter()


@health_router.get("/health")
async def health_check(engine: AnalysisEngine = Depends(get_engine)):
    """Liveness plus dataset cache counters."""
    settings = get_settings()
    return {
        "status": "ok",
        "env": settings.app_env,
        "cache": engine.aggregator.cache_stats(),
    }


# ──────────────────────────────────────────────
# Analysis
# ──────────────────────────────────────────────

analysis_router = APIRouter()


@analysis_router.post("/analysis/{symbol}")
async def analyze_symbol(
    symbol: str,
    body: Optional[AnalysisRequest] = None,
    engine: AnalysisEngine = Depends(get_engine),
):
    """Levels, trendlines, confluence zones and patterns across timeframes."""
    body = body or AnalysisRequest()
    result = await engine.analyze(symbol, body.timeframes, body.options)
    payload = result.to_dict()
    if body.include_features:
        datasets = await engine.aggregator.fetch(result.symbol, result.timeframes_used) if result.timeframes_used else {}
        payload["features"] = [v.to_dict() for v in engine.extract_features(result, datasets)]
    return payload


@analysis_router.get("/analysis/{symbol}/validate")
async def validate_level(
    symbol: str,
    price: float = Query(..., description="Price level to validate"),
    timeframes: Optional[str] = Query(None, description="Comma-separated timeframes, e.g. 1h,4h"),
    tolerance: Optional[float] = Query(None, description="Price tolerance in percent"),
    engine: AnalysisEngine = Depends(get_engine),
):
    """Cross-timeframe agreement on a single price."""
    options = {"price_tolerance_percent": tolerance} if tolerance is not None else {}
    result = await engine.validate(symbol, price, _split_timeframes(timeframes), options)
    return result.to_dict()


@analysis_router.delete("/analysis/cache")
async def clear_cache(engine: AnalysisEngine = Depends(get_engine)):
    """Drop every cached candle series."""
    engine.aggregator.clear_cache()
    return {"cleared": True}
