"""
Levelscope: Error Taxonomy

Data-unavailable errors are raised by candle providers and absorbed by the
aggregator (the timeframe is omitted). Configuration errors are raised
before any analysis runs and are the only errors that leave the engine.
"""

from __future__ import annotations

from typing import Any, Optional


class LevelscopeError(Exception):
    """Base class for all levelscope errors."""


class CandleFetchError(LevelscopeError):
    """A candle series could not be fetched for one symbol/timeframe."""

    def __init__(
        self,
        message: str,
        symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
    ):
        super().__init__(message)
        self.symbol = symbol
        self.timeframe = timeframe


class InsufficientDataError(CandleFetchError):
    """A candle series was fetched but holds too few candles to analyze."""


class ConfigurationError(LevelscopeError, ValueError):
    """Invalid analysis options or request parameters.

    ``errors`` holds one dict per offending field with ``field`` and
    ``message`` keys, in the shape the API error handlers return.
    """

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []
