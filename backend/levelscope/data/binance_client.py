"""
Levelscope: Binance Market Data Client

Public klines (candles) from the Binance REST API. No API key required.
Transient failures (transport errors, HTTP 429/5xx) are retried with
backoff; anything still failing surfaces as CandleFetchError.
"""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

from levelscope.config import get_settings
from levelscope.errors import CandleFetchError
from levelscope.models import Candle
from levelscope.utils.retry import with_retry

log = structlog.get_logger(__name__)

# Binance kline intervals keyed by our timeframe labels
_INTERVALS = {
    "1m": "1m",
    "5m": "5m",
    "15m": "15m",
    "30m": "30m",
    "1h": "1h",
    "4h": "4h",
    "1d": "1d",
    "1w": "1w",
}
_MAX_LIMIT = 1000


class TransientFetchError(CandleFetchError):
    """Rate limiting or a server-side error; worth retrying."""


class BinanceClient:
    """Wrapper around the Binance public klines endpoint."""

    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = get_settings()
        self._base_url = (base_url or settings.binance_base_url).rstrip("/")
        self._timeout = settings.binance_timeout_seconds
        self._transport = transport

    @with_retry(attempts=3, base_delay=0.5, retry_on=(TransientFetchError, httpx.TransportError))
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 500) -> list[Candle]:
        """Fetch the most recent ``limit`` candles, oldest first."""
        interval = _INTERVALS.get(timeframe)
        if interval is None:
            raise CandleFetchError(f"Unsupported timeframe '{timeframe}'", symbol, timeframe)

        params = {
            "symbol": symbol.upper(),
            "interval": interval,
            "limit": max(1, min(limit, _MAX_LIMIT)),
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.get(f"{self._base_url}/api/v3/klines", params=params)

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientFetchError(
                f"Binance returned {resp.status_code} for {symbol} {timeframe}", symbol, timeframe,
            )
        if resp.status_code >= 400:
            log.warning(
                "binance.request_rejected",
                symbol=symbol,
                timeframe=timeframe,
                status=resp.status_code,
                body=resp.text[:200],
            )
            raise CandleFetchError(
                f"Binance rejected {symbol} {timeframe}: HTTP {resp.status_code}", symbol, timeframe,
            )

        return [self._parse_kline(row) for row in resp.json()]

    @staticmethod
    def _parse_kline(row: list) -> Candle:
        # [open_time_ms, open, high, low, close, volume, close_time_ms, ...]
        return Candle(
            time=int(row[0]) // 1000,
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )
