"""
Levelscope: Feature Extraction & Confidence Scoring

Turns a detected line (or pattern) plus its candle context into a
fixed-schema feature vector for downstream scoring models.

Feature groups:
  Touch quality   touch count, fit, wick/body/exact ratios
  Volume          touch volume relative to the series average
  Timing          age, recent touches, candles since last touch,
                  hour of day and day of week of the last touch
  Market context  regime from SMA20/SMA50 divergence and return volatility
  Confluence      share of available timeframes supporting the line,
                  higher-timeframe agreement, nearby patterns
  Price           distance from the current price, roundness

``FEATURE_RANGES`` is the single table of normalization bounds.
``normalize_features`` maps every feature into [0, 1] (clamped), and
``score_confidence`` is a fixed-weight linear score over the normalized
vector.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import structlog
from ta.trend import SMAIndicator

from levelscope.config import TIMEFRAME_PROFILES, timeframe_rank
from levelscope.engines.series import SeriesArrays
from levelscope.models import (
    DetectedLine,
    FeatureVector,
    LineFeatures,
    MarketRegime,
    PatternCandidate,
    PatternType,
    TimeframeDataset,
    TouchPoint,
    TouchType,
)

log = structlog.get_logger(__name__)


# ──────────────────────────────────────────────
# Static tables
# ──────────────────────────────────────────────

FEATURE_RANGES: dict[str, tuple[float, float]] = {
    "touch_count": (2, 20),
    "r_squared": (0, 1),
    "confidence": (0, 1),
    "wick_touch_ratio": (0, 1),
    "body_touch_ratio": (0, 1),
    "exact_touch_ratio": (0, 1),
    "volume_average": (0, 5),
    "volume_max": (0, 5),
    "volume_strength": (0, 5),
    "age_in_candles": (0, 500),
    "recent_touch_count": (0, 10),
    "time_since_last_touch": (0, 100),
    "market_regime": (0, 2),
    "trend_strength": (-1, 1),
    "volatility": (0, 1),
    "time_of_day": (0, 23),
    "day_of_week": (0, 6),
    "timeframe_confluence": (0, 1),
    "higher_timeframe_alignment": (0, 1),
    "near_pattern": (0, 1),
    "pattern_type": (0, len(PatternType)),
    "distance_from_price": (0, 0.1),
    "price_roundness": (0, 1),
    "near_psychological": (0, 1),
}

FEATURE_ORDER: tuple[str, ...] = tuple(FEATURE_RANGES)

# (weight, inverted) per normalized feature; weights sum to 1
FEATURE_WEIGHTS: dict[str, tuple[float, bool]] = {
    "touch_count": (0.15, False),
    "r_squared": (0.10, False),
    "confidence": (0.15, False),
    "body_touch_ratio": (0.05, False),
    "exact_touch_ratio": (0.05, False),
    "volume_strength": (0.10, False),
    "recent_touch_count": (0.10, False),
    "time_since_last_touch": (0.05, True),
    "timeframe_confluence": (0.10, False),
    "higher_timeframe_alignment": (0.05, False),
    "near_pattern": (0.03, False),
    "distance_from_price": (0.04, True),
    "price_roundness": (0.03, False),
}

_REGIME_CODES = {
    MarketRegime.RANGING: 0,
    MarketRegime.TRENDING: 1,
    MarketRegime.VOLATILE: 2,
}
_PATTERN_CODES = {p: i + 1 for i, p in enumerate(PatternType)}

RECENT_CANDLES = 20
PATTERN_PROXIMITY = 0.01


def feature_values(features: LineFeatures) -> dict[str, float]:
    """Raw numeric value per feature, with categoricals encoded."""
    values = {}
    for name in FEATURE_ORDER:
        raw = getattr(features, name)
        if name == "market_regime":
            raw = _REGIME_CODES[raw]
        elif name == "pattern_type":
            raw = _PATTERN_CODES.get(raw, 0) if raw is not None else 0
        values[name] = float(raw)
    return values


def normalize_features(features: LineFeatures) -> tuple[float, ...]:
    """Map each feature into [0, 1] using FEATURE_RANGES, in FEATURE_ORDER."""
    values = feature_values(features)
    normalized = []
    for name in FEATURE_ORDER:
        low, high = FEATURE_RANGES[name]
        value = (values[name] - low) / (high - low)
        if not math.isfinite(value):
            value = 0.0
        normalized.append(round(min(1.0, max(0.0, value)), 6))
    return tuple(normalized)


def score_confidence(normalized: Sequence[float]) -> float:
    """Fixed-weight linear confidence over a normalized vector."""
    by_name = dict(zip(FEATURE_ORDER, normalized))
    score = 0.0
    for name, (weight, inverted) in FEATURE_WEIGHTS.items():
        value = by_name.get(name, 0.0)
        score += weight * ((1.0 - value) if inverted else value)
    return round(min(1.0, max(0.0, score)), 6)


def price_roundness(price: float) -> float:
    """How round a price is relative to its own order of magnitude.

    1.0 on a multiple of the leading power of ten (50000, 0.3), then 0.8,
    0.6 and 0.4 for halves, quarters and tenths of it; 0 otherwise.
    """
    if not math.isfinite(price) or price <= 0:
        return 0.0
    magnitude = 10 ** math.floor(math.log10(price))
    for fraction, score in ((1.0, 1.0), (0.5, 0.8), (0.25, 0.6), (0.1, 0.4)):
        step = magnitude * fraction
        nearest = round(price / step) * step
        if abs(price - nearest) <= price * 0.001:
            return score
    return 0.0


def near_psychological(price: float, tolerance: float = 0.005) -> bool:
    """Within ``tolerance`` of a half-magnitude level (45000, 50000, 0.5 ...)."""
    if not math.isfinite(price) or price <= 0:
        return False
    step = 10 ** math.floor(math.log10(price)) / 2
    nearest = round(price / step) * step
    return abs(price - nearest) <= price * tolerance


# ──────────────────────────────────────────────
# Extractor
# ──────────────────────────────────────────────

class FeatureExtractor:
    """Feature vectors for detections on one timeframe's candles.

    Usage:
        extractor = FeatureExtractor(dataset, current_price=50_000.0,
                                     available_timeframes=["1h", "4h"])
        vector = extractor.extract(line, patterns)
    """

    def __init__(
        self,
        dataset: TimeframeDataset,
        current_price: Optional[float] = None,
        available_timeframes: Sequence[str] = (),
    ):
        self.dataset = dataset
        self.series = SeriesArrays.from_candles(dataset.candles, dataset.timeframe)
        last = dataset.last_price
        self.current_price = current_price if current_price is not None else (last or 0.0)
        self.available_timeframes = tuple(available_timeframes) or (dataset.timeframe,)
        self._context: Optional[tuple[MarketRegime, float, float]] = None

    # ──────────────────────────────────────────
    # Market context
    # ──────────────────────────────────────────

    def market_context(self) -> tuple[MarketRegime, float, float]:
        """(regime, trend_strength in [-1, 1], volatility in [0, 1])."""
        if self._context is None:
            self._context = self._compute_context()
        return self._context

    def _compute_context(self) -> tuple[MarketRegime, float, float]:
        closes = pd.Series(self.series.closes, dtype=float)
        trend = 0.0
        if len(closes) >= 50:
            sma20 = SMAIndicator(close=closes, window=20).sma_indicator().iloc[-1]
            sma50 = SMAIndicator(close=closes, window=50).sma_indicator().iloc[-1]
            if pd.notna(sma20) and pd.notna(sma50) and sma50 != 0:
                trend = float(np.clip((sma20 - sma50) / sma50 * 10, -1.0, 1.0))

        returns = closes.tail(50).pct_change().replace([np.inf, -np.inf], np.nan).dropna()
        volatility = 0.0
        if len(returns) > 1:
            volatility = float(min(1.0, returns.std() * 100))

        if volatility > 0.7:
            regime = MarketRegime.VOLATILE
        elif abs(trend) > 0.3:
            regime = MarketRegime.TRENDING
        else:
            regime = MarketRegime.RANGING
        return regime, round(trend, 6), round(volatility, 6)

    # ──────────────────────────────────────────
    # Lines
    # ──────────────────────────────────────────

    def extract_features(
        self,
        line: DetectedLine,
        patterns: Sequence[PatternCandidate] = (),
    ) -> LineFeatures:
        touches = [tp for tp in line.touch_points if tp.timeframe == self.dataset.timeframe]
        if not touches:
            touches = list(line.touch_points)
        n = len(self.series)
        regime, trend, volatility = self.market_context()

        counts = {t: 0 for t in TouchType}
        for tp in touches:
            counts[tp.touch_type] += 1
        total = max(len(touches), 1)

        own = [tp for tp in touches if tp.timeframe == self.dataset.timeframe]
        first_index = min((tp.index for tp in own), default=n - 1)
        last_index = max((tp.index for tp in own), default=n - 1)
        last_time = max(tp.time for tp in touches)

        level_now = line.price_at(int(self.series.times[-1])) if n else (line.price or 0.0)
        nearby = self._nearby_pattern(line, patterns)

        return LineFeatures(
            touch_count=line.touch_count,
            r_squared=round(self._fit(line, touches), 6),
            confidence=line.confidence,
            wick_touch_ratio=round(counts[TouchType.WICK] / total, 6),
            body_touch_ratio=round(counts[TouchType.BODY] / total, 6),
            exact_touch_ratio=round(counts[TouchType.EXACT] / total, 6),
            **self._volume_features(touches),
            age_in_candles=max(0, n - 1 - first_index),
            recent_touch_count=sum(1 for tp in own if tp.index >= n - RECENT_CANDLES),
            time_since_last_touch=max(0, n - 1 - last_index),
            market_regime=regime,
            trend_strength=trend,
            volatility=volatility,
            **self._clock_features(last_time),
            timeframe_confluence=round(
                min(1.0, line.timeframe_count / len(self.available_timeframes)), 6,
            ),
            higher_timeframe_alignment=self._higher_alignment(line.supporting_timeframes),
            near_pattern=nearby is not None,
            pattern_type=nearby.pattern_type if nearby is not None else None,
            distance_from_price=round(self._distance(level_now), 6),
            price_roundness=price_roundness(level_now),
            near_psychological=near_psychological(level_now),
        )

    def extract(self, line: DetectedLine, patterns: Sequence[PatternCandidate] = ()) -> FeatureVector:
        features = self.extract_features(line, patterns)
        normalized = normalize_features(features)
        return FeatureVector(
            subject_id=line.id,
            subject_kind="line",
            features=features,
            normalized=normalized,
            confidence=score_confidence(normalized),
        )

    # ──────────────────────────────────────────
    # Patterns
    # ──────────────────────────────────────────

    def extract_pattern(self, pattern: PatternCandidate) -> FeatureVector:
        """Same schema for a pattern: key points stand in for touches."""
        n = len(self.series)
        regime, trend, volatility = self.market_context()
        points = pattern.formation_points
        indices = [kp.index for kp in points if 0 <= kp.index < n]
        last_value = points[-1].value if points else 0.0

        volumes = self.series.volumes[indices] if indices else np.array([])
        mean_volume = self.series.mean_volume()
        if len(volumes) and mean_volume > 0:
            ratios = volumes / mean_volume
            volume = {
                "volume_average": round(float(np.nanmean(ratios)), 6),
                "volume_max": round(float(np.nanmax(ratios)), 6),
                "volume_strength": round(float(np.nanmean(np.minimum(ratios, 5.0))), 6),
            }
        else:
            volume = {"volume_average": 0.0, "volume_max": 0.0, "volume_strength": 0.0}

        features = LineFeatures(
            touch_count=len(points),
            r_squared=pattern.quality,
            confidence=pattern.confidence,
            **volume,
            age_in_candles=max(0, n - 1 - pattern.start_index),
            recent_touch_count=sum(1 for i in indices if i >= n - RECENT_CANDLES),
            time_since_last_touch=max(0, n - 1 - pattern.end_index),
            market_regime=regime,
            trend_strength=trend,
            volatility=volatility,
            **self._clock_features(pattern.end_time),
            timeframe_confluence=round(1 / len(self.available_timeframes), 6),
            near_pattern=True,
            pattern_type=pattern.pattern_type,
            distance_from_price=round(self._distance(last_value), 6),
            price_roundness=price_roundness(last_value),
            near_psychological=near_psychological(last_value),
        )
        normalized = normalize_features(features)
        subject = f"{pattern.pattern_type.value}:{pattern.timeframe}:{pattern.start_index}-{pattern.end_index}"
        return FeatureVector(
            subject_id=subject,
            subject_kind="pattern",
            features=features,
            normalized=normalized,
            confidence=score_confidence(normalized),
        )

    # ──────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────

    def _volume_features(self, touches: Sequence[TouchPoint]) -> dict[str, float]:
        mean_volume = self.series.mean_volume()
        volumes = np.array([tp.volume for tp in touches], dtype=float)
        if mean_volume <= 0 or len(volumes) == 0:
            return {"volume_average": 0.0, "volume_max": 0.0, "volume_strength": 0.0}
        ratios = volumes / mean_volume
        capped = [min(tp.volume_ratio, 5.0) for tp in touches]
        return {
            "volume_average": round(float(ratios.mean()), 6),
            "volume_max": round(float(ratios.max()), 6),
            "volume_strength": round(float(np.mean(capped)), 6),
        }

    @staticmethod
    def _clock_features(epoch_seconds: int) -> dict[str, int]:
        try:
            moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            log.debug("features.bad_timestamp", time=epoch_seconds)
            return {"time_of_day": 0, "day_of_week": 0}
        return {"time_of_day": moment.hour, "day_of_week": moment.isoweekday() % 7}

    @staticmethod
    def _fit(line: DetectedLine, touches: Sequence[TouchPoint]) -> float:
        """R² for trendlines; touch-price tightness for horizontal levels."""
        if line.r_squared is not None:
            return line.r_squared
        prices = np.array([tp.price for tp in touches], dtype=float)
        mean = prices.mean() if len(prices) else 0.0
        if mean <= 0:
            return 0.0
        dispersion_percent = prices.std() / mean * 100
        return float(max(0.0, 1.0 - dispersion_percent))

    def _higher_alignment(self, timeframes: Sequence[str]) -> bool:
        if self.dataset.timeframe not in TIMEFRAME_PROFILES:
            return False
        own = timeframe_rank(self.dataset.timeframe)
        return any(tf in TIMEFRAME_PROFILES and timeframe_rank(tf) > own for tf in timeframes)

    def _distance(self, price: float) -> float:
        if not self.current_price or not math.isfinite(price):
            return 0.0
        return abs(price - self.current_price) / abs(self.current_price)

    @staticmethod
    def _nearby_pattern(line: DetectedLine, patterns: Sequence[PatternCandidate]) -> Optional[PatternCandidate]:
        """Most confident pattern with a key point within 1% of the line."""
        best = None
        for pattern in patterns:
            for kp in pattern.formation_points:
                level = line.price_at(kp.time)
                if level and abs(kp.value - level) <= abs(level) * PATTERN_PROXIMITY:
                    if best is None or pattern.confidence > best.confidence:
                        best = pattern
                    break
        return best


def extract_line_features(
    lines: Sequence[DetectedLine],
    datasets: dict[str, TimeframeDataset],
    patterns: Sequence[PatternCandidate] = (),
    current_price: Optional[float] = None,
) -> list[FeatureVector]:
    """Vectors for each line, read against its shortest supporting timeframe."""
    extractors: dict[str, FeatureExtractor] = {}
    available = list(datasets)
    vectors = []
    for line in lines:
        tf = next((t for t in line.supporting_timeframes if t in datasets), None)
        if tf is None:
            log.debug("features.no_dataset", line_id=line.id)
            continue
        if tf not in extractors:
            extractors[tf] = FeatureExtractor(datasets[tf], current_price, available)
        try:
            vectors.append(extractors[tf].extract(line, patterns))
        except Exception as exc:
            log.warning("features.line_failed", line_id=line.id, timeframe=tf, error=str(exc))
    return vectors
