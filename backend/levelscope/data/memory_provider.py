"""
Levelscope: In-Memory Candle Provider

Serves pre-loaded candle series, for tests, replays and offline analysis.
A series registered as an exception is raised on fetch instead.
"""

from __future__ import annotations

import asyncio
from typing import Sequence, Union

from levelscope.errors import CandleFetchError
from levelscope.models import Candle

SeriesOrError = Union[Sequence[Candle], BaseException]


class InMemoryCandleProvider:
    """Candle provider backed by a dict of (SYMBOL, timeframe) → candles."""

    def __init__(self, series: dict[tuple[str, str], SeriesOrError] | None = None, delay: float = 0.0):
        self._series: dict[tuple[str, str], SeriesOrError] = {}
        self.delay = delay
        self.calls: list[tuple[str, str, int]] = []
        for (symbol, timeframe), value in (series or {}).items():
            self.load(symbol, timeframe, value)

    def load(self, symbol: str, timeframe: str, candles: SeriesOrError) -> None:
        self._series[(symbol.upper(), timeframe)] = candles

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        self.calls.append((symbol, timeframe, limit))
        if self.delay:
            await asyncio.sleep(self.delay)

        value = self._series.get((symbol.upper(), timeframe))
        if value is None:
            raise CandleFetchError(f"No candles for {symbol} {timeframe}", symbol, timeframe)
        if isinstance(value, BaseException):
            raise value
        return list(value)[-limit:] if limit else list(value)
