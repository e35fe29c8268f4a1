"""
Levelscope: Pydantic Models

All I/O schemas for the engine. Providers return candles, the aggregator
returns datasets, detectors return lines, zones and patterns, and the API
serializes these.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from levelscope.config import TIMEFRAME_PROFILES
from levelscope.errors import ConfigurationError


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class TimeFrame(str, Enum):
    """Supported candle timeframes."""
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"
    W1 = "1w"


class LineKind(str, Enum):
    SUPPORT = "support"
    RESISTANCE = "resistance"
    TRENDLINE = "trendline"


class TouchType(str, Enum):
    """How a candle met a level. Ordered weakest to strongest."""
    WICK = "wick"
    BODY = "body"
    EXACT = "exact"


class ZoneKind(str, Enum):
    SUPPORT = "support"
    RESISTANCE = "resistance"
    PIVOT = "pivot"


class PatternType(str, Enum):
    """Geometric chart patterns the pattern engine can recognize."""
    DOUBLE_TOP = "double_top"
    DOUBLE_BOTTOM = "double_bottom"
    HEAD_AND_SHOULDERS = "head_and_shoulders"
    INVERSE_HEAD_AND_SHOULDERS = "inverse_head_and_shoulders"
    SYMMETRICAL_TRIANGLE = "symmetrical_triangle"
    ASCENDING_TRIANGLE = "ascending_triangle"
    DESCENDING_TRIANGLE = "descending_triangle"
    ASCENDING_CHANNEL = "ascending_channel"
    DESCENDING_CHANNEL = "descending_channel"


class Implication(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class MarketRegime(str, Enum):
    TRENDING = "trending"
    RANGING = "ranging"
    VOLATILE = "volatile"


class _Record(BaseModel):
    """Immutable record with a JSON-ready dict form."""

    model_config = ConfigDict(frozen=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ──────────────────────────────────────────────
# Market Data
# ──────────────────────────────────────────────

class Candle(_Record):
    """One OHLCV candle. ``time`` is the open time in epoch seconds.

    Inconsistent OHLC values are accepted as-is; detectors tolerate them.
    """
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class TimeframeDataset(_Record):
    """An ordered candle series for one timeframe, replaced wholesale on refresh."""
    timeframe: str
    candles: tuple[Candle, ...]
    weight: float = Field(gt=0, le=1)
    fetched_at: float = 0.0

    @property
    def size(self) -> int:
        return len(self.candles)

    @property
    def last_price(self) -> Optional[float]:
        return self.candles[-1].close if self.candles else None


# ──────────────────────────────────────────────
# Lines & Zones
# ──────────────────────────────────────────────

class TouchPoint(_Record):
    """A candle that met a level, with its classifications and reaction."""
    time: int
    index: int
    price: float
    timeframe: str
    touch_type: TouchType
    classifications: tuple[TouchType, ...]
    volume: float = 0.0
    volume_ratio: float = 1.0
    bounce_strength: float = 0.0   # percent move away from the level
    strength: float = 0.0


class LineQuality(_Record):
    """Touch-quality breakdown for a line. Shares are 0 – 1, scores 0 – 100."""
    touch_quality: float = Field(0.0, ge=0, le=100)
    wick_body_ratio: float = Field(0.0, ge=0, le=1)     # body or exact touches
    volume_confirmation: float = Field(0.0, ge=0, le=1)
    bounce_confirmation: float = Field(0.0, ge=0, le=1)
    overall_quality: float = Field(0.0, ge=0, le=100)


class DetectedLine(_Record):
    """A support/resistance level or trendline backed by at least two touches."""
    id: str
    kind: LineKind
    side: LineKind
    price: Optional[float] = None
    slope: Optional[float] = None          # price per second (trendlines)
    intercept: Optional[float] = None      # price at epoch 0 (trendlines)
    r_squared: Optional[float] = None
    touch_points: tuple[TouchPoint, ...] = Field(min_length=2)
    strength: float = Field(ge=0, le=1)
    confidence: float = Field(ge=0, le=1)
    supporting_timeframes: tuple[str, ...]
    quality: LineQuality = Field(default_factory=LineQuality)

    @model_validator(mode="after")
    def _check_geometry(self) -> "DetectedLine":
        if self.kind == LineKind.TRENDLINE:
            if self.slope is None or self.intercept is None:
                raise ValueError("trendline requires slope and intercept")
        elif self.price is None:
            raise ValueError("horizontal line requires a price")
        return self

    @property
    def touch_count(self) -> int:
        return len(self.touch_points)

    @property
    def timeframe_count(self) -> int:
        return len(self.supporting_timeframes)

    @property
    def first_touch(self) -> int:
        return min(tp.time for tp in self.touch_points)

    @property
    def last_touch(self) -> int:
        return max(tp.time for tp in self.touch_points)

    @property
    def is_horizontal(self) -> bool:
        return self.kind != LineKind.TRENDLINE

    def price_at(self, time: int) -> float:
        """Level price at a given epoch second."""
        if self.kind == LineKind.TRENDLINE:
            return self.slope * time + self.intercept
        return self.price

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["touch_count"] = self.touch_count
        return d


class PriceRange(_Record):
    min: float
    center: float
    max: float

    @model_validator(mode="after")
    def _check_order(self) -> "PriceRange":
        if not self.min < self.max:
            raise ValueError(f"range min {self.min} must be below max {self.max}")
        if not self.min <= self.center <= self.max:
            raise ValueError(f"center {self.center} outside [{self.min}, {self.max}]")
        return self

    @property
    def width(self) -> float:
        return self.max - self.min

    def contains(self, price: float) -> bool:
        return self.min <= price <= self.max


class ConfluenceZone(_Record):
    """A price band where levels from several timeframes agree."""
    id: str
    price_range: PriceRange
    kind: ZoneKind
    timeframe_count: int = Field(ge=1)
    supporting_timeframes: tuple[str, ...]
    strength: float = Field(ge=0, le=1)
    touch_count: int = 0
    line_ids: tuple[str, ...] = ()


# ──────────────────────────────────────────────
# Patterns
# ──────────────────────────────────────────────

TARGET_LABEL = "target"


class KeyPoint(_Record):
    index: int
    time: int
    value: float
    label: str


class PatternMetrics(_Record):
    """Trade levels implied by a pattern. Levels are None where the shape has none."""
    formation_period: int = Field(0, ge=0)      # candles from first to last key point
    breakout_level: Optional[float] = None
    target_level: Optional[float] = None        # measured move from the breakout level
    stop_loss: Optional[float] = None
    symmetry: Optional[float] = None


class PatternCandidate(_Record):
    """A recognized chart pattern over a candle window."""
    pattern_type: PatternType
    confidence: float = Field(ge=0, le=1)
    start_index: int = Field(ge=0)
    end_index: int
    start_time: int
    end_time: int
    key_points: tuple[KeyPoint, ...]
    implication: Implication
    timeframe: str = ""
    quality: float = Field(0.0, ge=0, le=1)
    metrics: PatternMetrics = Field(default_factory=PatternMetrics)

    @model_validator(mode="after")
    def _check_window(self) -> "PatternCandidate":
        if self.start_index >= self.end_index:
            raise ValueError("pattern start_index must precede end_index")
        return self

    @property
    def formation_points(self) -> tuple[KeyPoint, ...]:
        """Key points on the price path, without the projected target."""
        return tuple(kp for kp in self.key_points if kp.label != TARGET_LABEL)


# ──────────────────────────────────────────────
# Features
# ──────────────────────────────────────────────

class LineFeatures(_Record):
    """Fixed-schema raw features describing one detection."""
    touch_count: int = 0
    r_squared: float = 0.0
    confidence: float = 0.0
    wick_touch_ratio: float = 0.0
    body_touch_ratio: float = 0.0
    exact_touch_ratio: float = 0.0
    volume_average: float = 0.0       # touch volume / series mean volume
    volume_max: float = 0.0
    volume_strength: float = 0.0
    age_in_candles: int = 0
    recent_touch_count: int = 0
    time_since_last_touch: int = 0
    market_regime: MarketRegime = MarketRegime.RANGING
    trend_strength: float = 0.0
    volatility: float = 0.0
    time_of_day: int = 0
    day_of_week: int = 0              # Sunday = 0
    timeframe_confluence: float = 0.0
    higher_timeframe_alignment: bool = False
    near_pattern: bool = False
    pattern_type: Optional[PatternType] = None
    distance_from_price: float = 0.0
    price_roundness: float = 0.0
    near_psychological: bool = False


class FeatureVector(_Record):
    subject_id: str
    subject_kind: str                 # "line" | "pattern"
    features: LineFeatures
    normalized: tuple[float, ...]
    confidence: float = Field(ge=0, le=1)


# ──────────────────────────────────────────────
# Requests & Results
# ──────────────────────────────────────────────

class DetectionConfig(_Record):
    """Analysis options. Out-of-range values fail validation up front."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_timeframes: int = Field(2, ge=1, le=len(TIMEFRAME_PROFILES))
    strength_threshold: float = Field(0.6, ge=0, le=1)
    min_touch_count: int = Field(2, ge=2, le=100)
    price_tolerance_percent: float = Field(0.5, gt=0, le=10)
    zone_width_percent: float = Field(1.0, gt=0, le=10)
    max_lines: int = Field(50, ge=1, le=500)
    max_patterns: int = Field(10, ge=0, le=100)
    pattern_min_confidence: float = Field(0.7, ge=0, le=1)
    trendline_min_r_squared: float = Field(0.7, ge=0, le=1)
    pattern_timeframe: Optional[str] = None

    @field_validator("pattern_timeframe")
    @classmethod
    def _known_timeframe(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in TIMEFRAME_PROFILES:
            raise ValueError(f"unknown timeframe '{v}'")
        return v

    @classmethod
    def from_options(cls, options: Optional[dict[str, Any]] = None) -> "DetectionConfig":
        """Build a config from loose options, raising ConfigurationError."""
        try:
            return cls(**(options or {}))
        except ValidationError as exc:
            errors = [
                {
                    "field": ".".join(str(loc) for loc in err.get("loc", [])),
                    "message": err.get("msg", ""),
                    "type": err.get("type", ""),
                }
                for err in exc.errors()
            ]
            raise ConfigurationError("Invalid detection options", errors=errors) from exc

    @property
    def tolerance(self) -> float:
        """Price tolerance as a fraction."""
        return self.price_tolerance_percent / 100.0


class DetectionSummary(_Record):
    total_lines: int = 0
    high_confidence_lines: int = 0
    multi_timeframe_lines: int = 0
    average_strength: float = 0.0
    zone_count: int = 0
    pattern_count: int = 0
    detection_time_ms: float = 0.0


class ValidationResult(_Record):
    """Cross-timeframe agreement on a single price."""
    price: float
    validation_score: float = Field(ge=0, le=1)
    supporting_timeframes: tuple[str, ...] = ()
    touch_counts: dict[str, int] = Field(default_factory=dict)
    avg_strength: float = 0.0
    nearest_levels: dict[str, float] = Field(default_factory=dict)


class AnalysisResult(_Record):
    symbol: str
    timeframes_used: tuple[str, ...]
    horizontal_lines: tuple[DetectedLine, ...] = ()
    trendlines: tuple[DetectedLine, ...] = ()
    confluence_zones: tuple[ConfluenceZone, ...] = ()
    patterns: tuple[PatternCandidate, ...] = ()
    summary: DetectionSummary = Field(default_factory=DetectionSummary)
    config: DetectionConfig = Field(default_factory=DetectionConfig)

    @property
    def lines(self) -> tuple[DetectedLine, ...]:
        return self.horizontal_lines + self.trendlines

    def to_records(self) -> list[dict[str, Any]]:
        """Flatten into plain records tagged with ``record_type`` for sinks."""
        records: list[dict[str, Any]] = []
        for line in self.lines:
            records.append({"record_type": "line", "symbol": self.symbol, **line.to_dict()})
        for zone in self.confluence_zones:
            records.append({"record_type": "zone", "symbol": self.symbol, **zone.to_dict()})
        for pattern in self.patterns:
            records.append({"record_type": "pattern", "symbol": self.symbol, **pattern.to_dict()})
        records.append({"record_type": "summary", "symbol": self.symbol, **self.summary.to_dict()})
        return records
