"""
Levelscope: Pattern Recognition Engine

Rule-based detection of geometric chart patterns from OHLCV data.
Deterministic analysis, no ML required.

Chart Patterns:
  Double Top/Bottom, Head & Shoulders (& Inverse),
  Symmetrical/Ascending/Descending Triangle, Channel (Ascending/Descending)

Each pattern type maps to one pure detector ``(series, start, window)``
returning a PatternCandidate or None. The engine slides every detector over
the recent candles and keeps candidates above the confidence floor.
Overlapping candidates are not deduplicated; ``rank_patterns`` orders them
for callers that want the top few.

Metrics: double tops/bottoms and head & shoulders carry a measured-move
target (neckline ± pattern height, also emitted as a "target" key point) and
a stop at the peak or head; triangles carry their breakout side.

Confidence:
  0.60 base
  +0.20 × geometric quality of the fit
  +0.10 when key-point volume exceeds 1.5× the window average
  +0.05 per key point with a reversal candle (pin bar, engulfing) nearby
  capped at 0.95
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional, Sequence

import numpy as np
import structlog

from levelscope.engines.series import SeriesArrays, find_swings, fit_line, relative_spread, reversal_signature
from levelscope.models import (
    TARGET_LABEL,
    Implication,
    KeyPoint,
    PatternCandidate,
    PatternMetrics,
    PatternType,
    TimeframeDataset,
)

log = structlog.get_logger(__name__)

Detector = Callable[[SeriesArrays, int, int], Optional[PatternCandidate]]

PEAK_TOLERANCE = 0.02          # double top/bottom peaks and H&S shoulders
MIN_PATTERN_HEIGHT = 0.03      # double top/bottom neckline depth
FLAT_SIDE_SPREAD = 0.01        # std/mean of the flat triangle side
TRIANGLE_MIN_R2 = 0.7
CHANNEL_MIN_R2 = 0.8
CHANNEL_SLOPE_DIFF = 0.2       # |upper − lower| / |mean slope|
MAX_CONFIDENCE = 0.95


# ──────────────────────────────────────────────
# Scoring
# ──────────────────────────────────────────────

def score_pattern(series: SeriesArrays, start: int, end: int, key_indices: Sequence[int], quality: float) -> float:
    """Confidence for a pattern spanning ``[start, end]`` with the given key candles."""
    confidence = 0.6 + 0.2 * min(1.0, max(0.0, quality))

    window_volume = series.volumes[start:end + 1]
    window_volume = window_volume[np.isfinite(window_volume)]
    key_indices = sorted(set(key_indices))
    key_volume = series.volumes[key_indices]
    key_volume = key_volume[np.isfinite(key_volume)]
    if len(window_volume) and len(key_volume) and window_volume.mean() > 0:
        if key_volume.mean() > 1.5 * window_volume.mean():
            confidence += 0.1

    for i in key_indices:
        if any(reversal_signature(series, j) for j in (i - 1, i, i + 1)):
            confidence += 0.05
    return round(min(confidence, MAX_CONFIDENCE), 6)


def _candidate(
    series: SeriesArrays,
    pattern_type: PatternType,
    start: int,
    end: int,
    points: list[tuple[int, float, str]],
    implication: Implication,
    quality: float,
    metrics: Optional[PatternMetrics] = None,
) -> PatternCandidate:
    quality = min(1.0, max(0.0, quality))
    metrics = metrics or PatternMetrics(formation_period=end - start + 1)
    key_points = [
        KeyPoint(index=i, time=int(series.times[i]), value=round(float(v), 8), label=label)
        for i, v, label in sorted(points)
    ]
    # The projected target sits on the last candle; it takes no part in scoring.
    if metrics.target_level is not None:
        key_points.append(KeyPoint(
            index=end, time=int(series.times[end]), value=round(metrics.target_level, 8), label=TARGET_LABEL,
        ))
    return PatternCandidate(
        pattern_type=pattern_type,
        confidence=score_pattern(series, start, end, [i for i, _, _ in points], quality),
        start_index=start,
        end_index=end,
        start_time=int(series.times[start]),
        end_time=int(series.times[end]),
        key_points=tuple(key_points),
        implication=implication,
        timeframe=series.timeframe,
        quality=round(quality, 6),
        metrics=metrics,
    )


def _swings(data: np.ndarray, start: int, window: int, mode: str, order: int = 2) -> list[tuple[int, float]]:
    """Swings inside ``[start, start + window)`` with absolute indices."""
    return [(start + i, v) for i, v in find_swings(data[start:start + window], mode, order)]


def _separated(swings: list[tuple[int, float]], min_gap: int = 3) -> list[tuple[int, float]]:
    """Collapse swings closer than ``min_gap`` bars, keeping the larger value."""
    kept: list[tuple[int, float]] = []
    for i, v in swings:
        if kept and i - kept[-1][0] < min_gap:
            if v > kept[-1][1]:
                kept[-1] = (i, v)
            continue
        kept.append((i, v))
    return kept


# ──────────────────────────────────────────────
# Detectors
# ──────────────────────────────────────────────

def _double(series: SeriesArrays, start: int, window: int, top: bool) -> Optional[PatternCandidate]:
    end = start + window - 1
    if window < 10 or end >= len(series):
        return None
    data = series.highs if top else series.lows
    swings = _swings(data, start, window, "high" if top else "low")
    if len(swings) < 2:
        return None

    # Two most extreme swings at least five bars apart
    ranked = sorted(swings, key=lambda s: (-s[1] if top else s[1], s[0]))
    first = ranked[0]
    second = next((s for s in ranked[1:] if abs(s[0] - first[0]) >= 5), None)
    if second is None:
        return None
    (i1, v1), (i2, v2) = sorted([first, second])

    ref = max(v1, v2) if top else min(v1, v2)
    if ref <= 0 or abs(v1 - v2) / ref > PEAK_TOLERANCE:
        return None

    between = (series.lows if top else series.highs)[i1:i2 + 1]
    if not np.isfinite(between).any():
        return None
    if top:
        neck_idx = i1 + int(np.nanargmin(between))
        neckline = float(series.lows[neck_idx])
        height = (min(v1, v2) - neckline) / min(v1, v2)
    else:
        neck_idx = i1 + int(np.nanargmax(between))
        neckline = float(series.highs[neck_idx])
        height = (neckline - max(v1, v2)) / max(v1, v2)
    if height < MIN_PATTERN_HEIGHT:
        return None

    quality = 0.5 * (1 - abs(v1 - v2) / ref / PEAK_TOLERANCE) + 0.5 * min(1.0, height / (2 * MIN_PATTERN_HEIGHT))
    # Measured move: the first peak's distance from the neckline, projected through it
    move = abs(float(v1) - neckline)
    metrics = PatternMetrics(
        formation_period=i2 - i1 + 1,
        breakout_level=neckline,
        target_level=neckline - move if top else neckline + move,
        stop_loss=float(ref),
        symmetry=round(1 - abs(v1 - v2) / ref, 6),
    )
    label = "top" if top else "bottom"
    return _candidate(
        series,
        PatternType.DOUBLE_TOP if top else PatternType.DOUBLE_BOTTOM,
        start, end,
        [(i1, v1, f"first_{label}"), (neck_idx, neckline, "neckline"), (i2, v2, f"second_{label}")],
        Implication.BEARISH if top else Implication.BULLISH,
        quality,
        metrics,
    )


def detect_double_top(series: SeriesArrays, start: int, window: int) -> Optional[PatternCandidate]:
    """Two peaks within 2% of each other over a valley at least 3% deep."""
    return _double(series, start, window, top=True)


def detect_double_bottom(series: SeriesArrays, start: int, window: int) -> Optional[PatternCandidate]:
    """Two troughs within 2% of each other under a peak at least 3% high."""
    return _double(series, start, window, top=False)


def _head_and_shoulders(series: SeriesArrays, start: int, window: int, inverse: bool) -> Optional[PatternCandidate]:
    end = start + window - 1
    if window < 15 or end >= len(series):
        return None
    # The inverse pattern is the regular one on negated prices.
    sign = -1.0 if inverse else 1.0
    peaks = sign * (series.lows if inverse else series.highs)
    troughs = sign * (series.highs if inverse else series.lows)
    swings = _separated(_swings(peaks, start, window, "high"))
    if len(swings) < 3:
        return None

    best = None
    for j in range(len(swings) - 2):
        (li, lv), (hi, hv), (ri, rv) = swings[j], swings[j + 1], swings[j + 2]
        if hi - li < 2 or ri - hi < 2:
            continue
        shoulder = max(lv, rv)
        if shoulder == 0 or abs(lv - rv) / abs(shoulder) > PEAK_TOLERANCE:
            continue
        prominence = (hv - shoulder) / abs(hv)
        if prominence <= 0.01:
            continue
        if best is None or prominence > best[0]:
            best = (prominence, li, lv, hi, hv, ri, rv)
    if best is None:
        return None

    prominence, li, lv, hi, hv, ri, rv = best
    between_left = troughs[li:hi + 1]
    between_right = troughs[hi:ri + 1]
    if not (np.isfinite(between_left).any() and np.isfinite(between_right).any()):
        return None
    t1 = li + int(np.nanargmin(between_left))
    t2 = hi + int(np.nanargmin(between_right))
    neckline = max(troughs[t1], troughs[t2])
    if min(lv, rv) <= neckline:
        return None

    symmetry = 1 - abs(lv - rv) / abs(max(lv, rv)) / PEAK_TOLERANCE
    quality = 0.5 * symmetry + 0.5 * min(1.0, prominence / 0.05)

    # Targets use the mean of the two neckline troughs, in real prices
    neck_price = sign * float(troughs[t1] + troughs[t2]) / 2
    head = sign * float(hv)
    height = abs(head - neck_price)
    metrics = PatternMetrics(
        formation_period=ri - li + 1,
        breakout_level=neck_price,
        target_level=neck_price + height if inverse else neck_price - height,
        stop_loss=head,
        symmetry=round(1 - abs(lv - rv) / abs(lv), 6),
    )
    return _candidate(
        series,
        PatternType.INVERSE_HEAD_AND_SHOULDERS if inverse else PatternType.HEAD_AND_SHOULDERS,
        start, end,
        [
            (li, sign * lv, "left_shoulder"),
            (t1, sign * float(troughs[t1]), "left_neckline"),
            (hi, sign * hv, "head"),
            (t2, sign * float(troughs[t2]), "right_neckline"),
            (ri, sign * rv, "right_shoulder"),
        ],
        Implication.BULLISH if inverse else Implication.BEARISH,
        quality,
        metrics,
    )


def detect_head_and_shoulders(series: SeriesArrays, start: int, window: int) -> Optional[PatternCandidate]:
    """Three peaks, the middle highest, shoulders within 2% of each other."""
    return _head_and_shoulders(series, start, window, inverse=False)


def detect_inverse_head_and_shoulders(series: SeriesArrays, start: int, window: int) -> Optional[PatternCandidate]:
    return _head_and_shoulders(series, start, window, inverse=True)


def _triangle_sides(series: SeriesArrays, start: int, window: int):
    end = start + window - 1
    if window < 15 or end >= len(series):
        return None
    highs = _swings(series.highs, start, window, "high")
    lows = _swings(series.lows, start, window, "low")
    if len(highs) < 2 or len(lows) < 2:
        return None
    upper = fit_line(np.array([i for i, _ in highs], dtype=float), np.array([v for _, v in highs]))
    lower = fit_line(np.array([i for i, _ in lows], dtype=float), np.array([v for _, v in lows]))
    if upper is None or lower is None:
        return None
    return end, highs, lows, upper, lower


def _triangle_points(highs, lows) -> list[tuple[int, float, str]]:
    return [
        (highs[0][0], highs[0][1], "upper_start"),
        (highs[-1][0], highs[-1][1], "upper_end"),
        (lows[0][0], lows[0][1], "lower_start"),
        (lows[-1][0], lows[-1][1], "lower_end"),
    ]


def _triangle_metrics(start: int, end: int, breakout: float) -> PatternMetrics:
    return PatternMetrics(formation_period=end - start + 1, breakout_level=float(breakout))


def detect_symmetrical_triangle(series: SeriesArrays, start: int, window: int) -> Optional[PatternCandidate]:
    """Falling highs and rising lows converging ahead of the window."""
    sides = _triangle_sides(series, start, window)
    if sides is None:
        return None
    end, highs, lows, upper, lower = sides
    if len(highs) < 3 or len(lows) < 3:
        return None
    if not (upper.slope < 0 < lower.slope):
        return None
    if min(upper.r_squared, lower.r_squared) < TRIANGLE_MIN_R2:
        return None

    # Candles from the window start to the apex
    apex = (lower.intercept - upper.intercept) / (upper.slope - lower.slope) - start
    if not 0.8 * window <= apex <= 2.5 * window:
        return None
    quality = (upper.r_squared + lower.r_squared) / 2
    return _candidate(
        series, PatternType.SYMMETRICAL_TRIANGLE, start, end,
        _triangle_points(highs, lows), Implication.NEUTRAL, quality,
        _triangle_metrics(start, end, (highs[-1][1] + lows[-1][1]) / 2),
    )


def detect_ascending_triangle(series: SeriesArrays, start: int, window: int) -> Optional[PatternCandidate]:
    """Flat resistance over rising support."""
    sides = _triangle_sides(series, start, window)
    if sides is None:
        return None
    end, highs, lows, upper, lower = sides
    spread = relative_spread(np.array([v for _, v in highs]))
    if spread > FLAT_SIDE_SPREAD or len(lows) < 3:
        return None
    if lower.slope <= 0 or lower.r_squared < TRIANGLE_MIN_R2:
        return None
    quality = 0.5 * (1 - spread / FLAT_SIDE_SPREAD) + 0.5 * lower.r_squared
    return _candidate(
        series, PatternType.ASCENDING_TRIANGLE, start, end,
        _triangle_points(highs, lows), Implication.BULLISH, quality,
        _triangle_metrics(start, end, highs[-1][1]),
    )


def detect_descending_triangle(series: SeriesArrays, start: int, window: int) -> Optional[PatternCandidate]:
    """Flat support under falling resistance."""
    sides = _triangle_sides(series, start, window)
    if sides is None:
        return None
    end, highs, lows, upper, lower = sides
    spread = relative_spread(np.array([v for _, v in lows]))
    if spread > FLAT_SIDE_SPREAD or len(highs) < 3:
        return None
    if upper.slope >= 0 or upper.r_squared < TRIANGLE_MIN_R2:
        return None
    quality = 0.5 * (1 - spread / FLAT_SIDE_SPREAD) + 0.5 * upper.r_squared
    return _candidate(
        series, PatternType.DESCENDING_TRIANGLE, start, end,
        _triangle_points(highs, lows), Implication.BEARISH, quality,
        _triangle_metrics(start, end, lows[-1][1]),
    )


def _channel(series: SeriesArrays, start: int, window: int, ascending: bool) -> Optional[PatternCandidate]:
    end = start + window - 1
    if window < 10 or end >= len(series):
        return None
    x = np.arange(start, end + 1, dtype=float)
    upper = fit_line(x, series.highs[start:end + 1])
    lower = fit_line(x, series.lows[start:end + 1])
    if upper is None or lower is None:
        return None
    if min(upper.r_squared, lower.r_squared) < CHANNEL_MIN_R2:
        return None

    mean_slope = (upper.slope + lower.slope) / 2
    if mean_slope == 0 or (mean_slope > 0) != ascending or upper.slope * lower.slope <= 0:
        return None
    if abs(upper.slope - lower.slope) / abs(mean_slope) > CHANNEL_SLOPE_DIFF:
        return None
    mid = float(np.nanmean(series.closes[start:end + 1]))
    # Require at least 1% drift over the window
    if mid <= 0 or abs(mean_slope) * window / mid < 0.01:
        return None

    quality = (upper.r_squared + lower.r_squared) / 2
    points = [
        (start, float(upper.at(start)), "upper_start"),
        (end, float(upper.at(end)), "upper_end"),
        (start, float(lower.at(start)), "lower_start"),
        (end, float(lower.at(end)), "lower_end"),
    ]
    return _candidate(
        series,
        PatternType.ASCENDING_CHANNEL if ascending else PatternType.DESCENDING_CHANNEL,
        start, end, points,
        Implication.BULLISH if ascending else Implication.BEARISH,
        quality,
    )


def detect_ascending_channel(series: SeriesArrays, start: int, window: int) -> Optional[PatternCandidate]:
    """Parallel rising highs and lows."""
    return _channel(series, start, window, ascending=True)


def detect_descending_channel(series: SeriesArrays, start: int, window: int) -> Optional[PatternCandidate]:
    return _channel(series, start, window, ascending=False)


PATTERN_DETECTORS: dict[PatternType, Detector] = {
    PatternType.DOUBLE_TOP: detect_double_top,
    PatternType.DOUBLE_BOTTOM: detect_double_bottom,
    PatternType.HEAD_AND_SHOULDERS: detect_head_and_shoulders,
    PatternType.INVERSE_HEAD_AND_SHOULDERS: detect_inverse_head_and_shoulders,
    PatternType.SYMMETRICAL_TRIANGLE: detect_symmetrical_triangle,
    PatternType.ASCENDING_TRIANGLE: detect_ascending_triangle,
    PatternType.DESCENDING_TRIANGLE: detect_descending_triangle,
    PatternType.ASCENDING_CHANNEL: detect_ascending_channel,
    PatternType.DESCENDING_CHANNEL: detect_descending_channel,
}

_TRIANGLE_WINDOWS = (20, 30, 40, 50, 60)

PATTERN_WINDOWS: dict[PatternType, tuple[int, ...]] = {
    PatternType.DOUBLE_TOP: (20, 30, 40),
    PatternType.DOUBLE_BOTTOM: (20, 30, 40),
    PatternType.HEAD_AND_SHOULDERS: (30, 45, 60),
    PatternType.INVERSE_HEAD_AND_SHOULDERS: (30, 45, 60),
    PatternType.SYMMETRICAL_TRIANGLE: _TRIANGLE_WINDOWS,
    PatternType.ASCENDING_TRIANGLE: _TRIANGLE_WINDOWS,
    PatternType.DESCENDING_TRIANGLE: _TRIANGLE_WINDOWS,
    PatternType.ASCENDING_CHANNEL: (30, 50),
    PatternType.DESCENDING_CHANNEL: (30, 50),
}


def pattern_sort_key(pattern: PatternCandidate) -> tuple:
    return (-pattern.confidence, -pattern.end_index, pattern.pattern_type.value, pattern.start_index)


def rank_patterns(candidates: Iterable[PatternCandidate], top_n: Optional[int] = None) -> list[PatternCandidate]:
    """Order candidates by confidence (most recent first on ties) and keep ``top_n``."""
    ranked = sorted(candidates, key=pattern_sort_key)
    return ranked if top_n is None else ranked[:top_n]


class PatternEngine:
    """Slides every pattern detector over recent candles.

    Usage:
        engine = PatternEngine()
        candidates = engine.scan(dataset)
        best = rank_patterns(candidates, top_n=5)
    """

    def __init__(self, lookback: int = 200, min_confidence: float = 0.7):
        self.lookback = lookback
        self.min_confidence = min_confidence

    def scan(
        self,
        dataset: TimeframeDataset,
        min_confidence: Optional[float] = None,
        pattern_types: Optional[Iterable[PatternType]] = None,
    ) -> list[PatternCandidate]:
        series = SeriesArrays.from_candles(dataset.candles, dataset.timeframe)
        return self.scan_series(series, min_confidence, pattern_types)

    def scan_series(
        self,
        series: SeriesArrays,
        min_confidence: Optional[float] = None,
        pattern_types: Optional[Iterable[PatternType]] = None,
    ) -> list[PatternCandidate]:
        """All candidates at or above the confidence floor, in scan order.

        Indices in the candidates refer to the full series.
        """
        floor = self.min_confidence if min_confidence is None else min_confidence
        types = list(pattern_types) if pattern_types is not None else list(PATTERN_DETECTORS)
        n = len(series)
        first = max(0, n - self.lookback)

        found: list[PatternCandidate] = []
        for pattern_type in types:
            detector = PATTERN_DETECTORS[pattern_type]
            for window in PATTERN_WINDOWS[pattern_type]:
                if window > n - first:
                    continue
                step = max(1, window // 4)
                for start in range(first, n - window + 1, step):
                    candidate = detector(series, start, window)
                    if candidate is not None and candidate.confidence >= floor:
                        found.append(candidate)

        log.debug("patterns.scan", timeframe=series.timeframe, candles=n, found=len(found))
        return found
