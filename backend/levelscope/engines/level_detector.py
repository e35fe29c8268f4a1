"""
Levelscope: Level Detector

Support/resistance levels and trendlines across timeframes.

Horizontal levels:
  1. Swing extremes per timeframe, clustered within the price tolerance
  2. Touch analysis of every candidate price (TouchDetector)
  3. Same-side levels from different timeframes merged into one line
  4. Lines below the timeframe, touch or strength minimums dropped

Trendlines:
  OLS fits over sliding windows of swing highs/lows, kept when R² clears
  the configured minimum, then projected onto the other timeframes to
  collect supporting timeframes.

Strength (0 – 1):
  0.35 × touch count (saturates at 10)
  0.20 × recency of touches
  0.20 × volume at touches
  0.25 × share of touches that bounced
Confidence (0 – 1):
  0.55 × strength + 0.20 × fit + 0.25 × summed timeframe weight
  (+0.05 when three or more timeframes agree)
"""

from __future__ import annotations

import hashlib
from typing import Optional, Sequence

import numpy as np
import structlog

from levelscope.config import TIMEFRAME_PROFILES, timeframe_rank
from levelscope.engines.series import SeriesArrays, find_swings, fit_line
from levelscope.engines.touch_detector import TouchAnalysis, TouchDetector
from levelscope.models import DetectedLine, DetectionConfig, LineKind, LineQuality, TimeframeDataset, TouchPoint

log = structlog.get_logger(__name__)

_SIDES = (LineKind.SUPPORT, LineKind.RESISTANCE)


def line_sort_key(line: DetectedLine) -> tuple:
    """Total order: confidence desc, strength desc, then id."""
    return (-line.confidence, -line.strength, line.id)


def make_line_id(*parts) -> str:
    raw = ":".join(str(p) for p in parts)
    return hashlib.md5(raw.encode()).hexdigest()[:16]


class LevelDetector:
    """Horizontal level and trendline detection.

    Usage:
        detector = LevelDetector()
        lines = detector.detect_horizontal(datasets, DetectionConfig())
        trends = detector.detect_trendlines(datasets, DetectionConfig())
    """

    def __init__(
        self,
        touch_detector: Optional[TouchDetector] = None,
        swing_order: int = 5,
        trendline_windows: Sequence[int] = (30, 50, 80),
        trendline_swing_order: int = 3,
        max_trendlines_per_side: int = 3,
    ):
        self.touches = touch_detector or TouchDetector()
        self.swing_order = swing_order
        self.trendline_windows = tuple(trendline_windows)
        self.trendline_swing_order = trendline_swing_order
        self.max_trendlines_per_side = max_trendlines_per_side

    # ──────────────────────────────────────────
    # Horizontal levels
    # ──────────────────────────────────────────

    def detect_timeframe(self, dataset: TimeframeDataset, config: DetectionConfig) -> list[DetectedLine]:
        """Horizontal levels seen by a single timeframe.

        Only the touch minimum is applied here; timeframe and strength
        minimums apply after merging.
        """
        series = SeriesArrays.from_candles(dataset.candles, dataset.timeframe)
        if len(series) < 2 * self.swing_order + 1:
            return []
        tol = series.mean_close() * config.tolerance
        if not tol > 0:
            return []

        lines = []
        for side in _SIDES:
            data, mode = (series.lows, "low") if side == LineKind.SUPPORT else (series.highs, "high")
            swings = find_swings(data, mode, self.swing_order)
            for cluster in self._cluster_prices([v for _, v in swings], tol):
                if len(cluster) < 2:
                    continue
                price = float(np.mean(cluster))
                analysis = self.touches.analyze(series, price, side, tol)
                if analysis.count < config.min_touch_count:
                    continue
                strength = self._strength(analysis, len(series))
                fit = self._consistency(analysis.touches, tol)
                quality = self.touches.line_quality(analysis.touches, analysis.quality_score)
                lines.append(self._horizontal_line(
                    side, price, analysis.touches, strength, fit, quality, (dataset.timeframe,),
                ))
        return lines

    def detect_horizontal(
        self,
        datasets: dict[str, TimeframeDataset],
        config: DetectionConfig,
        per_timeframe: Optional[dict[str, list[DetectedLine]]] = None,
    ) -> list[DetectedLine]:
        """Multi-timeframe horizontal levels, filtered and sorted."""
        if per_timeframe is None:
            per_timeframe = {tf: self.detect_timeframe(ds, config) for tf, ds in datasets.items()}

        weights = {tf: ds.weight for tf, ds in datasets.items()}
        merged: list[DetectedLine] = []
        for side in _SIDES:
            candidates = sorted(
                (line for lines in per_timeframe.values() for line in lines if line.side == side),
                key=lambda l: (l.price, l.id),
            )
            for group in self._group_lines(candidates, config.tolerance):
                merged.append(self._merge(group, weights, config))

        kept = [
            line for line in merged
            if line.timeframe_count >= config.min_timeframes
            and line.strength >= config.strength_threshold
            and line.touch_count >= config.min_touch_count
        ]
        kept.sort(key=line_sort_key)
        log.debug(
            "levels.horizontal",
            candidates=sum(len(v) for v in per_timeframe.values()),
            merged=len(merged),
            kept=len(kept),
        )
        return kept[:config.max_lines]

    def _merge(
        self,
        group: list[DetectedLine],
        weights: dict[str, float],
        config: DetectionConfig,
    ) -> DetectedLine:
        timeframes = sorted({tf for line in group for tf in line.supporting_timeframes}, key=timeframe_rank)
        # Clusters from one timeframe can share a candle; count it once.
        unique: dict[tuple[str, int], TouchPoint] = {}
        for line in group:
            for tp in line.touch_points:
                key = (tp.timeframe, tp.index)
                if key not in unique or tp.strength > unique[key].strength:
                    unique[key] = tp
        touches = sorted(
            unique.values(),
            key=lambda tp: (tp.time, timeframe_rank(tp.timeframe), tp.index),
        )
        counts = np.array([line.touch_count for line in group], dtype=float)
        price = float(np.dot([line.price for line in group], counts) / counts.sum())

        line_weights = np.array([
            sum(weights.get(tf, 0.0) for tf in line.supporting_timeframes) for line in group
        ])
        if line_weights.sum() > 0:
            strength = float(np.dot([line.strength for line in group], line_weights) / line_weights.sum())
        else:
            strength = float(np.mean([line.strength for line in group]))

        touch_quality = float(np.dot([line.quality.touch_quality for line in group], counts) / counts.sum())
        quality = self.touches.line_quality(touches, touch_quality)

        fit = self._consistency(touches, price * config.tolerance)
        return self._horizontal_line(
            group[0].side, price, touches, strength, fit, quality, tuple(timeframes), weights,
        )

    def _horizontal_line(
        self,
        side: LineKind,
        price: float,
        touches: Sequence[TouchPoint],
        strength: float,
        fit: float,
        quality: LineQuality,
        timeframes: tuple[str, ...],
        weights: Optional[dict[str, float]] = None,
    ) -> DetectedLine:
        return DetectedLine(
            id=make_line_id(side.value, round(price, 6), ",".join(timeframes)),
            kind=side,
            side=side,
            price=round(price, 8),
            touch_points=tuple(touches),
            strength=round(_clamp(strength), 6),
            confidence=round(self._confidence(strength, fit, timeframes, weights), 6),
            supporting_timeframes=timeframes,
            quality=quality,
        )

    # ──────────────────────────────────────────
    # Trendlines
    # ──────────────────────────────────────────

    def detect_trendlines(self, datasets: dict[str, TimeframeDataset], config: DetectionConfig) -> list[DetectedLine]:
        """Trendlines from every timeframe, cross-checked on the others."""
        series_by_tf = {
            tf: SeriesArrays.from_candles(ds.candles, tf) for tf, ds in datasets.items()
        }
        weights = {tf: ds.weight for tf, ds in datasets.items()}
        min_support = max(1, config.min_timeframes - 1)

        found: list[DetectedLine] = []
        for tf, series in series_by_tf.items():
            for fit, side, analysis, strength in self._trendline_candidates(series, config):
                supporting = [tf] + [
                    other for other, other_series in series_by_tf.items()
                    if other != tf and self._projects_onto(fit, side, analysis, other_series, config)
                ]
                timeframes = tuple(sorted(supporting, key=timeframe_rank))
                found.append(DetectedLine(
                    id=make_line_id("trendline", side.value, f"{fit.slope:.10g}", f"{fit.intercept:.6f}", tf),
                    kind=LineKind.TRENDLINE,
                    side=side,
                    slope=fit.slope,
                    intercept=fit.intercept,
                    r_squared=round(fit.r_squared, 6),
                    touch_points=tuple(analysis.touches),
                    strength=round(_clamp(strength), 6),
                    confidence=round(self._confidence(strength, fit.r_squared, timeframes, weights), 6),
                    supporting_timeframes=timeframes,
                    quality=self.touches.line_quality(analysis.touches, analysis.quality_score),
                ))

        strong = [
            line for line in found
            if line.strength >= config.strength_threshold
            and line.touch_count >= config.min_touch_count
        ]
        strong.sort(key=line_sort_key)
        # Dedupe first: the timeframe minimum may only remove lines.
        unique = self._dedupe_trendlines(strong, config.tolerance)
        kept = [line for line in unique if line.timeframe_count >= min_support]
        log.debug("levels.trendlines", candidates=len(found), kept=len(kept))
        return kept[:config.max_lines]

    def _trendline_candidates(self, series: SeriesArrays, config: DetectionConfig):
        """Yield (fit, side, analysis, strength) per timeframe, best few per side."""
        n = len(series)
        mean_price = series.mean_close()
        tol = mean_price * config.tolerance
        if n < min(self.trendline_windows, default=n + 1) or not tol > 0:
            return

        times = series.times.astype(float)
        for side in _SIDES:
            data, mode = (series.lows, "low") if side == LineKind.SUPPORT else (series.highs, "high")
            scored = []
            for window in self.trendline_windows:
                if window > n:
                    continue
                step = max(1, window // 2)
                for start in range(0, n - window + 1, step):
                    end = start + window
                    swings = find_swings(data[start:end], mode, self.trendline_swing_order)
                    if len(swings) < 3:
                        continue
                    idx = np.array([start + i for i, _ in swings])
                    fit = fit_line(times[idx], data[idx])
                    if fit is None or fit.r_squared < config.trendline_min_r_squared:
                        continue
                    # Nearly flat fits belong to the horizontal detector.
                    drift = abs(fit.slope * (times[end - 1] - times[start]))
                    if drift < tol:
                        continue
                    level = fit.at(times)
                    level[:start] = np.nan
                    analysis = self.touches.analyze(series, level, side, tol)
                    if analysis.count < config.min_touch_count:
                        continue
                    strength = self._strength(analysis, n)
                    scored.append((strength * fit.r_squared, start, window, fit, analysis, strength))

            scored.sort(key=lambda s: (-s[0], s[1], s[2]))
            accepted = []
            for _, _, _, fit, analysis, strength in scored:
                if any(self._same_trend(fit, other, times, tol) for other in accepted):
                    continue
                accepted.append(fit)
                yield fit, side, analysis, strength
                if len(accepted) >= self.max_trendlines_per_side:
                    break

    def _projects_onto(self, fit, side: LineKind, analysis: TouchAnalysis, other: SeriesArrays, config: DetectionConfig) -> bool:
        """True when the projected line is touched at least twice on another timeframe."""
        if len(other) == 0:
            return False
        tol = other.mean_close() * config.tolerance
        if not tol > 0:
            return False
        first = analysis.touches[0].time
        level = fit.at(other.times.astype(float))
        level[other.times < first] = np.nan
        return int(self.touches.touch_mask(other, level, side, tol).sum()) >= 2

    @staticmethod
    def _same_trend(a, b, times: np.ndarray, tol: float) -> bool:
        ends = np.array([times[0], times[-1]])
        return bool(np.all(np.abs(a.at(ends) - b.at(ends)) <= tol))

    @staticmethod
    def _dedupe_trendlines(lines: list[DetectedLine], tolerance: float) -> list[DetectedLine]:
        unique: list[DetectedLine] = []
        for line in lines:
            ends = (line.first_touch, line.last_touch)
            duplicate = any(
                other.side == line.side
                and all(
                    abs(other.price_at(t) - line.price_at(t)) <= abs(line.price_at(t)) * tolerance
                    for t in ends
                )
                for other in unique
            )
            if not duplicate:
                unique.append(line)
        return unique

    # ──────────────────────────────────────────
    # Scoring helpers
    # ──────────────────────────────────────────

    def _strength(self, analysis: TouchAnalysis, n_candles: int) -> float:
        if analysis.count == 0 or n_candles == 0:
            return 0.0
        touch_score = min(analysis.count / 10, 1.0)
        span = max(n_candles - 1, 1)
        recency = float(np.mean([tp.index / span for tp in analysis.touches]))
        volume_term = min(analysis.avg_volume_ratio / self.touches.volume_cap, 1.0)
        return _clamp(
            0.35 * touch_score
            + 0.20 * recency
            + 0.20 * volume_term
            + 0.25 * analysis.bounce_ratio
        )

    @staticmethod
    def _consistency(touches: Sequence[TouchPoint], tol: float) -> float:
        """1.0 when touch prices coincide, 0.0 when they spread a full tolerance."""
        if not touches or not tol > 0:
            return 0.0
        spread = float(np.std([tp.price for tp in touches]))
        return _clamp(1.0 - spread / tol)

    @staticmethod
    def _confidence(
        strength: float,
        fit: float,
        timeframes: Sequence[str],
        weights: Optional[dict[str, float]] = None,
    ) -> float:
        weights = weights or {}
        weight_sum = sum(
            weights.get(tf, TIMEFRAME_PROFILES[tf].weight if tf in TIMEFRAME_PROFILES else 0.0)
            for tf in timeframes
        )
        score = 0.55 * strength + 0.20 * fit + 0.25 * min(1.0, weight_sum)
        if len(timeframes) >= 3:
            score += 0.05
        return _clamp(score)

    @staticmethod
    def _cluster_prices(prices: list[float], tol: float) -> list[list[float]]:
        """Chain sorted prices into clusters within ``tol`` of the running mean."""
        clusters: list[list[float]] = []
        for price in sorted(prices):
            if clusters and abs(price - np.mean(clusters[-1])) <= tol:
                clusters[-1].append(price)
            else:
                clusters.append([price])
        return clusters

    @staticmethod
    def _group_lines(lines: list[DetectedLine], tolerance: float) -> list[list[DetectedLine]]:
        """Group price-sorted lines within ``tolerance`` (fraction) of the group anchor."""
        groups: list[list[DetectedLine]] = []
        for line in lines:
            if groups:
                anchor = groups[-1][0].price
                if abs(line.price - anchor) <= abs(anchor) * tolerance:
                    groups[-1].append(line)
                    continue
            groups.append([line])
        return groups


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if not np.isfinite(value):
        return low
    return float(min(high, max(low, value)))
