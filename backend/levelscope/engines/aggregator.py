"""
Levelscope: Multi-Timeframe Aggregator

Fetches one candle series per requested timeframe, concurrently, and
returns the ones that arrived. A timeframe that fails, times out or comes
back with too few candles is logged and left out; the others are
unaffected. Nothing here retries; retry policy belongs to the provider
or the caller.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Sequence

import structlog

from levelscope.cache import DatasetCache
from levelscope.config import TIMEFRAME_PROFILES, Settings, get_settings
from levelscope.data.provider import CandleProvider
from levelscope.errors import InsufficientDataError
from levelscope.models import TimeframeDataset
from levelscope.utils.validators import validate_symbol, validate_timeframes

log = structlog.get_logger(__name__)


class MultiTimeframeAggregator:
    """Settle-all fan-out over timeframes, backed by a DatasetCache.

    Usage:
        aggregator = MultiTimeframeAggregator(provider, DatasetCache(ttl_seconds=30))
        datasets = await aggregator.fetch("BTCUSDT", ["15m", "1h", "4h", "1d"])
    """

    def __init__(
        self,
        provider: CandleProvider,
        cache: Optional[DatasetCache] = None,
        settings: Optional[Settings] = None,
        timeout: Optional[float] = None,
        min_candles: Optional[int] = None,
    ):
        settings = settings or get_settings()
        self.provider = provider
        self.cache = cache if cache is not None else DatasetCache(settings.cache_ttl_seconds)
        self.timeout = timeout if timeout is not None else settings.fetch_timeout_seconds
        self.min_candles = min_candles if min_candles is not None else settings.min_candles

    async def fetch(self, symbol: str, timeframes: Sequence[str]) -> dict[str, TimeframeDataset]:
        """Datasets for every timeframe that succeeded, in request order.

        Raises ConfigurationError for an invalid symbol or unknown timeframe;
        never raises for fetch failures.
        """
        symbol = validate_symbol(symbol)
        labels = validate_timeframes(timeframes)

        outcomes = await asyncio.gather(
            *(self._fetch_one(symbol, tf) for tf in labels),
            return_exceptions=True,
        )

        datasets: dict[str, TimeframeDataset] = {}
        for tf, outcome in zip(labels, outcomes):
            if isinstance(outcome, TimeframeDataset):
                datasets[tf] = outcome
            elif isinstance(outcome, asyncio.TimeoutError):
                log.warning("aggregator.timeframe_timeout", symbol=symbol, timeframe=tf, timeout=self.timeout)
            elif isinstance(outcome, Exception):
                log.warning(
                    "aggregator.timeframe_failed",
                    symbol=symbol,
                    timeframe=tf,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            else:
                raise outcome

        if not datasets:
            log.warning("aggregator.no_data", symbol=symbol, timeframes=labels)
        else:
            log.info(
                "aggregator.fetched",
                symbol=symbol,
                requested=len(labels),
                succeeded=len(datasets),
            )
        return datasets

    async def _fetch_one(self, symbol: str, timeframe: str) -> TimeframeDataset:
        profile = TIMEFRAME_PROFILES[timeframe]

        async def load() -> TimeframeDataset:
            candles = await self.provider.fetch_candles(symbol, timeframe, profile.limit)
            if len(candles) < self.min_candles:
                raise InsufficientDataError(
                    f"{len(candles)} candles for {symbol} {timeframe}, need {self.min_candles}",
                    symbol,
                    timeframe,
                )
            return TimeframeDataset(
                timeframe=timeframe,
                candles=tuple(candles),
                weight=profile.weight,
                fetched_at=time.time(),
            )

        pending = self.cache.get_or_fetch(symbol, timeframe, load)
        if self.timeout and self.timeout > 0:
            return await asyncio.wait_for(pending, self.timeout)
        return await pending

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict:
        return self.cache.stats()
