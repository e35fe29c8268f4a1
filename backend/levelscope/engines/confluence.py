"""
Levelscope: Confluence & Cross-Timeframe Validation

Groups horizontal levels from different timeframes into price zones, and
scores how strongly the available timeframes agree on an arbitrary price.
"""

from __future__ import annotations

from typing import Iterable, Optional

import numpy as np
import structlog

from levelscope.config import timeframe_rank
from levelscope.engines.level_detector import LevelDetector, make_line_id
from levelscope.engines.series import SeriesArrays
from levelscope.models import (
    ConfluenceZone,
    DetectedLine,
    DetectionConfig,
    LineKind,
    PriceRange,
    TimeframeDataset,
    ValidationResult,
    ZoneKind,
)

log = structlog.get_logger(__name__)


class ConfluenceValidator:
    """Confluence zones and single-price validation.

    Usage:
        validator = ConfluenceValidator()
        zones = validator.find_zones(lines, weights, min_timeframes=2, zone_width_percent=1.0)
        result = validator.validate(50_000.0, datasets, DetectionConfig())
    """

    # Saturation point for candle touches at a validated price
    TOUCH_SATURATION = 10

    def __init__(self, level_detector: Optional[LevelDetector] = None):
        self.levels = level_detector or LevelDetector()

    # ──────────────────────────────────────────
    # Zones
    # ──────────────────────────────────────────

    def find_zones(
        self,
        lines: Iterable[DetectedLine],
        weights: dict[str, float],
        min_timeframes: int = 2,
        zone_width_percent: float = 1.0,
    ) -> list[ConfluenceZone]:
        """Cluster horizontal lines by price into multi-timeframe zones.

        Lines are grouped greedily: a line joins the current group while it
        sits within ``zone_width_percent`` of the group's first price.
        Groups spanning fewer than ``min_timeframes`` timeframes are dropped.
        """
        horizontal = sorted(
            (line for line in lines if line.is_horizontal and line.price is not None),
            key=lambda l: (l.price, l.id),
        )

        groups: list[list[DetectedLine]] = []
        for line in horizontal:
            if groups:
                anchor = groups[-1][0].price
                if line.price - anchor <= abs(anchor) * zone_width_percent / 100:
                    groups[-1].append(line)
                    continue
            groups.append([line])

        zones = []
        for group in groups:
            timeframes = sorted(
                {tf for line in group for tf in line.supporting_timeframes},
                key=timeframe_rank,
            )
            if len(timeframes) < min_timeframes:
                continue
            zones.append(self._build_zone(group, timeframes, weights, zone_width_percent))

        zones.sort(key=lambda z: (-z.strength, z.price_range.center, z.id))
        log.debug("confluence.zones", lines=len(horizontal), groups=len(groups), zones=len(zones))
        return zones

    @staticmethod
    def _build_zone(
        group: list[DetectedLine],
        timeframes: list[str],
        weights: dict[str, float],
        zone_width_percent: float,
    ) -> ConfluenceZone:
        line_prices = [line.price for line in group]
        touch_prices = [tp.price for line in group for tp in line.touch_points]
        points = np.array(line_prices + touch_prices, dtype=float)
        points = points[np.isfinite(points)]
        low, high = float(points.min()), float(points.max())

        counts = np.array([line.touch_count for line in group], dtype=float)
        center = float(np.dot(line_prices, counts) / counts.sum())
        center = min(max(center, low), high)

        if high - low <= 0:
            half = max(abs(center) * zone_width_percent / 200, 1e-9)
            low, high = center - half, center + half

        sides = {line.side for line in group}
        if sides == {LineKind.SUPPORT}:
            kind = ZoneKind.SUPPORT
        elif sides == {LineKind.RESISTANCE}:
            kind = ZoneKind.RESISTANCE
        else:
            kind = ZoneKind.PIVOT

        line_weights = np.array([
            sum(weights.get(tf, 0.0) for tf in line.supporting_timeframes) for line in group
        ])
        strengths = np.array([line.strength for line in group])
        if line_weights.sum() > 0:
            mean_strength = float(np.dot(strengths, line_weights) / line_weights.sum())
        else:
            mean_strength = float(strengths.mean())
        coverage = min(1.0, sum(weights.get(tf, 0.0) for tf in timeframes))
        strength = min(1.0, max(0.0, 0.7 * mean_strength + 0.3 * coverage))

        return ConfluenceZone(
            id=make_line_id("zone", round(center, 6), ",".join(timeframes)),
            price_range=PriceRange(min=low, center=center, max=high),
            kind=kind,
            timeframe_count=len(timeframes),
            supporting_timeframes=tuple(timeframes),
            strength=round(strength, 6),
            touch_count=int(counts.sum()),
            line_ids=tuple(line.id for line in group),
        )

    # ──────────────────────────────────────────
    # Price validation
    # ──────────────────────────────────────────

    def validate(
        self,
        price: float,
        datasets: dict[str, TimeframeDataset],
        config: Optional[DetectionConfig] = None,
        per_timeframe: Optional[dict[str, list[DetectedLine]]] = None,
    ) -> ValidationResult:
        """Score cross-timeframe agreement on ``price``.

        Per timeframe: 0.6 × strength of the nearest level within tolerance
        plus 0.4 × candle touches at the price (saturating at 10). The
        overall score is the reliability-weighted mean across timeframes.
        A timeframe whose detection fails is logged and left out.
        """
        config = config or DetectionConfig()
        tol = abs(price) * config.tolerance

        touch_counts: dict[str, int] = {}
        nearest: dict[str, float] = {}
        matched_strengths: list[float] = []
        supporting: list[str] = []
        weighted = 0.0
        weight_total = 0.0

        for tf in sorted(datasets, key=timeframe_rank):
            dataset = datasets[tf]
            try:
                if per_timeframe is not None and tf in per_timeframe:
                    lines = per_timeframe[tf]
                else:
                    lines = self.levels.detect_timeframe(dataset, config)
                series = SeriesArrays.from_candles(dataset.candles, tf)
                touches = self.touches_at(series, price, tol)
            except Exception as exc:
                log.warning("confluence.timeframe_failed", timeframe=tf, price=price, error=str(exc))
                continue

            touch_counts[tf] = touches

            match = self._nearest_line(lines, price, tol)
            line_score = 0.0
            if match is not None:
                line_score = match.strength
                matched_strengths.append(match.strength)
                nearest[tf] = match.price
                supporting.append(tf)

            tf_score = 0.6 * line_score + 0.4 * min(1.0, touches / self.TOUCH_SATURATION)
            weighted += dataset.weight * tf_score
            weight_total += dataset.weight

        score = weighted / weight_total if weight_total > 0 else 0.0
        return ValidationResult(
            price=price,
            validation_score=round(min(1.0, max(0.0, score)), 6),
            supporting_timeframes=tuple(supporting),
            touch_counts=touch_counts,
            avg_strength=round(float(np.mean(matched_strengths)), 6) if matched_strengths else 0.0,
            nearest_levels=nearest,
        )

    @staticmethod
    def touches_at(series: SeriesArrays, price: float, tol: float) -> int:
        """Candles whose high-low range reaches within ``tol`` of ``price``."""
        if len(series) == 0:
            return 0
        with np.errstate(invalid="ignore"):
            hit = (series.lows - tol <= price) & (series.highs + tol >= price)
        return int(hit.sum())

    @staticmethod
    def _nearest_line(lines: list[DetectedLine], price: float, tol: float) -> Optional[DetectedLine]:
        best = None
        best_distance = None
        for line in lines:
            if not line.is_horizontal:
                continue
            distance = abs(line.price - price)
            if distance > tol:
                continue
            if best is None or (distance, -line.strength, line.id) < (best_distance, -best.strength, best.id):
                best, best_distance = line, distance
        return best
