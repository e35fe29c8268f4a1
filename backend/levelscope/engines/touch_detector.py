"""
Levelscope: Touch Detector

Finds the candles that touched a price level and grades each touch.

Touch types:
  wick   the candle's extreme (low for support, high for resistance)
         came within tolerance of the level
  body   the body edge on the same side also came within tolerance
  exact  the close landed within half the tolerance

A touch may carry several classifications; the strongest becomes its
primary ``touch_type``. The level may be a constant or one price per candle
(trendlines).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence, Union

import numpy as np

from levelscope.engines.series import SeriesArrays
from levelscope.models import LineKind, LineQuality, TouchPoint, TouchType

Level = Union[float, np.ndarray]


@dataclass
class TouchAnalysis:
    """Touches on one level in one series, with aggregate grades."""
    touches: list[TouchPoint] = field(default_factory=list)
    quality_score: float = 0.0              # 0 – 100
    bounce_ratio: float = 0.0               # share of touches that bounced
    avg_volume_ratio: float = 0.0           # capped, mean over touches

    @property
    def count(self) -> int:
        return len(self.touches)

    def type_counts(self) -> dict[str, int]:
        counts = {t.value: 0 for t in TouchType}
        for tp in self.touches:
            counts[tp.touch_type.value] += 1
        return counts


class TouchDetector:
    """Classifies touches and measures the reaction after each one.

    Usage:
        detector = TouchDetector()
        analysis = detector.analyze(series, 49_000.0, LineKind.SUPPORT, tolerance=250.0)
    """

    TYPE_WEIGHTS = {
        TouchType.WICK: 0.7,
        TouchType.BODY: 1.0,
        TouchType.EXACT: 1.2,
    }

    def __init__(
        self,
        volume_window: int = 20,
        volume_cap: float = 2.0,
        volume_threshold: float = 1.3,
        bounce_threshold_percent: float = 0.4,
        lookforward: int = 6,
    ):
        self.volume_window = volume_window
        self.volume_cap = volume_cap
        self.volume_threshold = volume_threshold
        self.bounce_threshold_percent = bounce_threshold_percent
        self.lookforward = lookforward

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def touch_mask(
        self,
        series: SeriesArrays,
        level: Level,
        side: LineKind,
        tolerance: float,
    ) -> np.ndarray:
        """Boolean mask of candles whose extreme is within tolerance of the level."""
        extreme = series.lows if side == LineKind.SUPPORT else series.highs
        with np.errstate(invalid="ignore"):
            return np.abs(extreme - level) <= tolerance

    def analyze(
        self,
        series: SeriesArrays,
        level: Level,
        side: LineKind,
        tolerance: float,
    ) -> TouchAnalysis:
        n = len(series)
        if n == 0 or tolerance <= 0:
            return TouchAnalysis()

        levels = np.broadcast_to(np.asarray(level, dtype=float), (n,))
        mask = self.touch_mask(series, levels, side, tolerance)
        if not mask.any():
            return TouchAnalysis()

        avg_volumes = self._trailing_volume(series.volumes, self.volume_window)
        touches = [
            self._grade(series, int(i), float(levels[i]), side, tolerance, avg_volumes[i])
            for i in np.flatnonzero(mask)
        ]
        return self._summarize(touches, n)

    # ──────────────────────────────────────────
    # Per-touch grading
    # ──────────────────────────────────────────

    def _grade(
        self,
        series: SeriesArrays,
        i: int,
        level: float,
        side: LineKind,
        tolerance: float,
        avg_volume: float,
    ) -> TouchPoint:
        close = series.closes[i]
        if side == LineKind.SUPPORT:
            extreme, body_edge = series.lows[i], min(series.opens[i], close)
        else:
            extreme, body_edge = series.highs[i], max(series.opens[i], close)

        classifications = [TouchType.WICK]
        price = extreme
        if abs(body_edge - level) <= tolerance:
            classifications.append(TouchType.BODY)
            price = body_edge
        if abs(close - level) <= tolerance * 0.5:
            classifications.append(TouchType.EXACT)
            price = close
        primary = classifications[-1]

        strength = self.TYPE_WEIGHTS[primary]
        volume = float(series.volumes[i]) if np.isfinite(series.volumes[i]) else 0.0
        volume_ratio = volume / avg_volume if avg_volume > 0 else 1.0
        if volume_ratio > self.volume_threshold:
            strength *= 1 + (min(volume_ratio, self.volume_cap) - 1) * 0.2

        bounce = self._bounce(series, i, side)
        if bounce > self.bounce_threshold_percent:
            strength *= 1 + (bounce / 100) * 0.5
        else:
            bounce = 0.0

        return TouchPoint(
            time=int(series.times[i]),
            index=i,
            price=float(price),
            timeframe=series.timeframe,
            touch_type=primary,
            classifications=tuple(classifications),
            volume=volume,
            volume_ratio=round(volume_ratio, 6),
            bounce_strength=round(float(bounce), 6),
            strength=round(float(strength), 6),
        )

    def _bounce(self, series: SeriesArrays, i: int, side: LineKind) -> float:
        """Largest percent move away from the touch within the lookforward window."""
        end = min(len(series), i + 1 + self.lookforward)
        if end <= i + 1:
            return 0.0
        if side == LineKind.SUPPORT:
            base = series.lows[i]
            future = series.highs[i + 1:end]
            move = np.nanmax(future) - base if np.isfinite(future).any() else 0.0
        else:
            base = series.highs[i]
            future = series.lows[i + 1:end]
            move = base - np.nanmin(future) if np.isfinite(future).any() else 0.0
        if not np.isfinite(base) or base <= 0 or not np.isfinite(move):
            return 0.0
        return max(0.0, float(move) / float(base) * 100)

    @staticmethod
    def _trailing_volume(volumes: np.ndarray, window: int) -> np.ndarray:
        """Mean of the previous ``window`` volumes; the series mean where none exist."""
        clean = np.where(np.isfinite(volumes), volumes, 0.0)
        csum = np.concatenate([[0.0], np.cumsum(clean)])
        idx = np.arange(len(clean))
        start = np.maximum(0, idx - window)
        counts = idx - start
        fallback = clean.mean() if len(clean) else 0.0
        with np.errstate(invalid="ignore", divide="ignore"):
            trailing = (csum[idx] - csum[start]) / counts
        return np.where(counts > 0, trailing, fallback)

    # ──────────────────────────────────────────
    # Aggregates
    # ──────────────────────────────────────────

    def _summarize(self, touches: list[TouchPoint], total_candles: int) -> TouchAnalysis:
        n = len(touches)
        avg_strength = float(np.mean([tp.strength for tp in touches]))
        solid, loud, bounced = self._shares(touches)

        score = min(n / total_candles * 100, 30)
        score += solid * 20
        score += min(avg_strength, 1.2) * 20
        score += loud * 15
        score += bounced * 15

        return TouchAnalysis(
            touches=touches,
            quality_score=min(score, 100.0),
            bounce_ratio=bounced,
            avg_volume_ratio=float(np.mean([min(tp.volume_ratio, self.volume_cap) for tp in touches])),
        )

    def line_quality(self, touches: Sequence[TouchPoint], touch_quality: float) -> LineQuality:
        """Quality breakdown for a line resting on ``touches``.

        overall = 0.4 × touch quality + 20 × (body share + volume share + bounce share)
        """
        if not touches:
            return LineQuality()
        solid, loud, bounced = self._shares(touches)
        touch_quality = min(max(float(touch_quality), 0.0), 100.0)
        overall = 0.4 * touch_quality + 20 * (solid + loud + bounced)
        return LineQuality(
            touch_quality=round(touch_quality, 4),
            wick_body_ratio=round(solid, 6),
            volume_confirmation=round(loud, 6),
            bounce_confirmation=round(bounced, 6),
            overall_quality=round(min(overall, 100.0), 4),
        )

    def _shares(self, touches: Sequence[TouchPoint]) -> tuple[float, float, float]:
        """Shares of body-or-exact, high-volume and bounced touches."""
        n = len(touches)
        solid = sum(1 for tp in touches if tp.touch_type != TouchType.WICK)
        loud = sum(1 for tp in touches if tp.volume_ratio > self.volume_threshold)
        bounced = sum(1 for tp in touches if tp.bounce_strength > 0)
        return solid / n, loud / n, bounced / n
