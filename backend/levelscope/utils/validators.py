"""
Levelscope: Input Validators

Reusable validation helpers for symbols, timeframe lists and prices.
Raise ConfigurationError (a ValueError) so callers can map to 422 responses.
"""

from __future__ import annotations

import math
import re
from typing import Iterable

from levelscope.config import TIMEFRAME_PROFILES
from levelscope.errors import ConfigurationError

# Exchange pair symbols such as BTCUSDT, or tickers with a class suffix
_SYMBOL_RE = re.compile(r"^[A-Z0-9]{1,20}([./-][A-Z0-9]{1,10})?$")


def validate_symbol(raw: str) -> str:
    """Clean and validate a market symbol.

    >>> validate_symbol(' btcusdt ')
    'BTCUSDT'
    """
    symbol = (raw or "").strip().upper()
    if not symbol:
        raise ConfigurationError("Symbol cannot be empty", errors=[
            {"field": "symbol", "message": "empty", "type": "value_error"},
        ])
    if not _SYMBOL_RE.match(symbol):
        raise ConfigurationError(f"Invalid symbol '{symbol}'", errors=[
            {"field": "symbol", "message": f"invalid symbol '{symbol}'", "type": "value_error"},
        ])
    return symbol


def validate_timeframes(timeframes: Iterable[str]) -> list[str]:
    """Validate timeframe labels, dropping duplicates but keeping order."""
    labels: list[str] = []
    unknown: list[str] = []
    for raw in timeframes:
        label = str(raw).strip()
        if label not in TIMEFRAME_PROFILES:
            unknown.append(label)
        elif label not in labels:
            labels.append(label)

    if unknown:
        raise ConfigurationError(
            f"Unknown timeframe(s): {', '.join(unknown)}",
            errors=[
                {"field": "timeframes", "message": f"unknown timeframe '{u}'", "type": "value_error"}
                for u in unknown
            ],
        )
    if not labels:
        raise ConfigurationError("At least one timeframe is required", errors=[
            {"field": "timeframes", "message": "empty", "type": "value_error"},
        ])
    return labels


def validate_price(price: float) -> float:
    """Require a finite, positive price."""
    try:
        value = float(price)
    except (TypeError, ValueError):
        value = math.nan
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"Invalid price '{price}'", errors=[
            {"field": "price", "message": "must be a finite positive number", "type": "value_error"},
        ])
    return value
