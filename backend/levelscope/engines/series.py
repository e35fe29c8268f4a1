"""
Levelscope: Series Math

Numpy views of a candle series plus the small numeric helpers every
detector shares: swing extremes, ordinary least squares fits and
single-candle reversal signatures.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from levelscope.models import Candle


# ──────────────────────────────────────────────
# Arrays
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class SeriesArrays:
    """Column arrays for one candle series. Non-finite values stay NaN."""
    timeframe: str
    times: np.ndarray
    opens: np.ndarray
    highs: np.ndarray
    lows: np.ndarray
    closes: np.ndarray
    volumes: np.ndarray

    @classmethod
    def from_candles(cls, candles: Sequence[Candle], timeframe: str = "") -> "SeriesArrays":
        def col(name: str) -> np.ndarray:
            return np.array([getattr(c, name) for c in candles], dtype=float)

        return cls(
            timeframe=timeframe,
            times=np.array([c.time for c in candles], dtype=np.int64),
            opens=col("open"),
            highs=col("high"),
            lows=col("low"),
            closes=col("close"),
            volumes=col("volume"),
        )

    def __len__(self) -> int:
        return len(self.closes)

    @property
    def body_highs(self) -> np.ndarray:
        return np.maximum(self.opens, self.closes)

    @property
    def body_lows(self) -> np.ndarray:
        return np.minimum(self.opens, self.closes)

    def mean_close(self) -> float:
        finite = self.closes[np.isfinite(self.closes)]
        return float(finite.mean()) if len(finite) else 0.0

    def mean_volume(self) -> float:
        finite = self.volumes[np.isfinite(self.volumes)]
        return float(finite.mean()) if len(finite) else 0.0


# ──────────────────────────────────────────────
# Swings & Fits
# ──────────────────────────────────────────────

def find_swings(data: np.ndarray, mode: str = "high", order: int = 5) -> list[tuple[int, float]]:
    """Find swing highs or lows. Returns list of (index, value).

    A swing is at least as extreme as the ``order`` values on each side.
    NaN never qualifies.
    """
    swings = []
    for i in range(order, len(data) - order):
        window = data[i - order:i + order + 1]
        if not np.all(np.isfinite(window)):
            continue
        if mode == "high":
            if data[i] >= window.max():
                swings.append((i, float(data[i])))
        else:
            if data[i] <= window.min():
                swings.append((i, float(data[i])))
    return swings


@dataclass(frozen=True)
class LineFit:
    slope: float
    intercept: float
    r_squared: float

    def at(self, x):
        return self.slope * x + self.intercept


def fit_line(x: np.ndarray, y: np.ndarray) -> Optional[LineFit]:
    """Ordinary least squares ``y = slope * x + intercept``.

    Returns None for fewer than two finite points or a degenerate x range.
    A perfectly flat y scores r_squared 1.0.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    mask = np.isfinite(x) & np.isfinite(y)
    x, y = x[mask], y[mask]
    if len(x) < 2:
        return None

    # Center x first: epoch seconds are large enough to cost precision.
    x_mean = x.mean()
    y_mean = y.mean()
    dx = x - x_mean
    ss_xx = float(np.dot(dx, dx))
    if ss_xx == 0:
        return None

    slope = float(np.dot(dx, y - y_mean)) / ss_xx
    intercept = float(y_mean - slope * x_mean)
    residuals = y - (slope * x + intercept)
    ss_res = float(np.dot(residuals, residuals))
    ss_tot = float(np.dot(y - y_mean, y - y_mean))
    r_squared = 1.0 if ss_tot == 0 else max(0.0, 1.0 - ss_res / ss_tot)
    return LineFit(slope=slope, intercept=intercept, r_squared=r_squared)


def relative_spread(values: np.ndarray) -> float:
    """Standard deviation over mean, the flatness measure for triangle sides."""
    values = values[np.isfinite(values)]
    if len(values) == 0:
        return float("inf")
    mean = float(values.mean())
    if mean == 0:
        return float("inf")
    return float(values.std()) / abs(mean)


# ──────────────────────────────────────────────
# Reversal Candles
# ──────────────────────────────────────────────

def reversal_signature(series: SeriesArrays, i: int) -> Optional[str]:
    """Single or two-candle reversal signature ending at index ``i``.

    Pin bar: one wick longer than 60% of the range with a body under 30%.
    Engulfing: the body fully covers the prior opposite-colored body.
    """
    if i < 0 or i >= len(series):
        return None
    o, h, l, c = series.opens[i], series.highs[i], series.lows[i], series.closes[i]
    rng = h - l
    if not np.isfinite(rng) or rng <= 0:
        return None

    body = abs(c - o)
    upper_wick = h - max(o, c)
    lower_wick = min(o, c) - l
    if body < rng * 0.3:
        if lower_wick > rng * 0.6:
            return "bullish_pin_bar"
        if upper_wick > rng * 0.6:
            return "bearish_pin_bar"

    if i >= 1:
        po, pc = series.opens[i - 1], series.closes[i - 1]
        if pc < po and c > o and o <= pc and c >= po:
            return "bullish_engulfing"
        if pc > po and c < o and o >= pc and c <= po:
            return "bearish_engulfing"
    return None
