"""
Levelscope: Candle Provider Contract

Anything that can return an ordered candle series for a symbol and
timeframe. Transient failures surface as CandleFetchError.
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from levelscope.models import Candle


@runtime_checkable
class CandleProvider(Protocol):
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> Sequence[Candle]:
        ...
