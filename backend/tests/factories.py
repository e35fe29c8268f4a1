"""
Levelscope: Test Data Factories

Deterministic candle series shared by the test modules.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

BASE_TIME = 1_704_067_200  # 2024-01-01 00:00 UTC (Monday)
HOUR = 3_600


def candles_from_closes(
    closes: Sequence[float],
    step_seconds: int = HOUR,
    wick: float = 0.2,
    volume: float = 100.0,
    start: int = BASE_TIME,
):
    """Candles whose open is the previous close and whose wicks extend ``wick``."""
    from levelscope.models import Candle

    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        o, c = float(prev), float(close)
        candles.append(Candle(
            time=start + i * step_seconds,
            open=o,
            high=max(o, c) + wick,
            low=min(o, c) - wick,
            close=c,
            volume=volume,
        ))
        prev = close
    return candles


def path_closes(anchors: Sequence[tuple[int, float]]) -> list[float]:
    """Piecewise-linear closes through (index, price) anchors."""
    xs = [a[0] for a in anchors]
    ys = [a[1] for a in anchors]
    return [float(v) for v in np.interp(np.arange(xs[-1] + 1), xs, ys)]


def oscillating_closes(n: int, low: float = 49_000.0, high: float = 51_000.0, period: int = 20) -> list[float]:
    """Triangle wave starting at ``low``, peaking at ``high`` every ``period`` candles."""
    half = period // 2
    closes = []
    for i in range(n):
        phase = i % period
        if phase <= half:
            closes.append(low + (high - low) * phase / half)
        else:
            closes.append(high - (high - low) * (phase - half) / half)
    return closes


def range_candles(n: int = 500, period: int = 20, step_seconds: int = HOUR):
    """A flat market bouncing between 49000 and 51000."""
    return candles_from_closes(oscillating_closes(n, period=period), step_seconds=step_seconds, wick=20.0)


def make_dataset(timeframe: str, candles):
    from levelscope.config import TIMEFRAME_PROFILES
    from levelscope.models import TimeframeDataset

    return TimeframeDataset(
        timeframe=timeframe,
        candles=tuple(candles),
        weight=TIMEFRAME_PROFILES[timeframe].weight,
        fetched_at=0.0,
    )


def range_datasets():
    """1h (500 candles) and 4h (200 candles) views of the same 49000/51000 range."""
    return {
        "1h": make_dataset("1h", range_candles(500, period=20, step_seconds=HOUR)),
        "4h": make_dataset("4h", range_candles(200, period=10, step_seconds=4 * HOUR)),
    }


def rising_zigzag_closes(n: int = 200, base: float = 100.0, slope: float = 0.3, amplitude: float = 2.0, period: int = 10):
    """An uptrend with regular swings: troughs lie on ``base + slope * i - amplitude``."""
    wave = oscillating_closes(n, low=-amplitude, high=amplitude, period=period)
    return [base + slope * i + w for i, w in enumerate(wave)]
