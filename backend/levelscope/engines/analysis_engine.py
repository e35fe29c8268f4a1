"""
Levelscope: Analysis Engine

Orchestrates one analysis pass:
  1. Validate options (ConfigurationError before anything runs)
  2. Fetch datasets through the aggregator
  3. Levels per timeframe, merged levels, trendlines
  4. Confluence zones from the per-timeframe levels
  5. Patterns on the pattern timeframe, top N kept
  6. Summary, then publish records to the sink (if any)

A stage that fails is logged and contributes nothing; only configuration
errors leave the engine.
"""

from __future__ import annotations

import time
from typing import Callable, Optional, Sequence, TypeVar, Union

import structlog

from levelscope.config import Settings, get_settings
from levelscope.engines.aggregator import MultiTimeframeAggregator
from levelscope.engines.confluence import ConfluenceValidator
from levelscope.engines.feature_extractor import FeatureExtractor, extract_line_features
from levelscope.engines.level_detector import LevelDetector
from levelscope.engines.pattern_engine import PatternEngine, rank_patterns
from levelscope.errors import ConfigurationError
from levelscope.models import (
    AnalysisResult,
    DetectedLine,
    DetectionConfig,
    DetectionSummary,
    FeatureVector,
    PatternCandidate,
    TimeframeDataset,
    ValidationResult,
)
from levelscope.sinks import ResultSink
from levelscope.utils.validators import validate_price, validate_symbol, validate_timeframes

log = structlog.get_logger(__name__)

T = TypeVar("T")
ConfigLike = Union[DetectionConfig, dict, None]

HIGH_CONFIDENCE = 0.8


def resolve_config(config: ConfigLike) -> DetectionConfig:
    """Accept a DetectionConfig, a dict of options or None."""
    if config is None:
        return DetectionConfig()
    if isinstance(config, DetectionConfig):
        return config
    if isinstance(config, dict):
        return DetectionConfig.from_options(config)
    raise ConfigurationError(f"Unsupported options type: {type(config).__name__}")


class AnalysisEngine:
    """Multi-timeframe level, zone and pattern analysis.

    Usage:
        engine = AnalysisEngine(MultiTimeframeAggregator(provider))
        result = await engine.analyze("BTCUSDT", ["1h", "4h"], {"min_timeframes": 2})
    """

    def __init__(
        self,
        aggregator: MultiTimeframeAggregator,
        level_detector: Optional[LevelDetector] = None,
        confluence: Optional[ConfluenceValidator] = None,
        pattern_engine: Optional[PatternEngine] = None,
        sink: Optional[ResultSink] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.aggregator = aggregator
        self.levels = level_detector or LevelDetector()
        self.confluence = confluence or ConfluenceValidator(self.levels)
        self.patterns = pattern_engine or PatternEngine(lookback=self.settings.pattern_lookback)
        self.sink = sink

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    async def analyze(
        self,
        symbol: str,
        timeframes: Optional[Sequence[str]] = None,
        config: ConfigLike = None,
    ) -> AnalysisResult:
        config = resolve_config(config)
        symbol = validate_symbol(symbol)
        labels = validate_timeframes(timeframes or self.settings.default_timeframe_list)

        datasets = await self.aggregator.fetch(symbol, labels)
        result = self.analyze_datasets(symbol, datasets, config)
        self._publish(result)
        return result

    def analyze_datasets(
        self,
        symbol: str,
        datasets: dict[str, TimeframeDataset],
        config: ConfigLike = None,
    ) -> AnalysisResult:
        """Run detection on already-fetched datasets. Pure and synchronous."""
        config = resolve_config(config)
        started = time.perf_counter()

        per_timeframe: dict[str, list[DetectedLine]] = {}
        for tf, dataset in datasets.items():
            per_timeframe[tf] = self._stage(
                "levels", lambda ds=dataset: self.levels.detect_timeframe(ds, config), [], symbol, tf,
            )

        horizontal = self._stage(
            "horizontal", lambda: self.levels.detect_horizontal(datasets, config, per_timeframe), [], symbol,
        )
        trendlines = self._stage(
            "trendlines", lambda: self.levels.detect_trendlines(datasets, config), [], symbol,
        )
        weights = {tf: ds.weight for tf, ds in datasets.items()}
        zones = self._stage(
            "confluence",
            lambda: self.confluence.find_zones(
                (
                    line for lines in per_timeframe.values() for line in lines
                    if line.strength >= config.strength_threshold
                ),
                weights,
                config.min_timeframes,
                config.zone_width_percent,
            ),
            [],
            symbol,
        )
        patterns = self._stage("patterns", lambda: self._detect_patterns(datasets, config), [], symbol)

        elapsed_ms = (time.perf_counter() - started) * 1000
        summary = self._summarize(horizontal + trendlines, zones, patterns, elapsed_ms)
        log.info(
            "analysis.completed",
            symbol=symbol,
            timeframes=list(datasets),
            lines=summary.total_lines,
            zones=summary.zone_count,
            patterns=summary.pattern_count,
            detection_time_ms=summary.detection_time_ms,
        )
        return AnalysisResult(
            symbol=symbol,
            timeframes_used=tuple(datasets),
            horizontal_lines=tuple(horizontal),
            trendlines=tuple(trendlines),
            confluence_zones=tuple(zones),
            patterns=tuple(patterns),
            summary=summary,
            config=config,
        )

    async def validate(
        self,
        symbol: str,
        price: float,
        timeframes: Optional[Sequence[str]] = None,
        config: ConfigLike = None,
    ) -> ValidationResult:
        """Cross-timeframe validation of a single price."""
        config = resolve_config(config)
        price = validate_price(price)
        symbol = validate_symbol(symbol)
        labels = validate_timeframes(timeframes or self.settings.default_timeframe_list)

        datasets = await self.aggregator.fetch(symbol, labels)
        return self.confluence.validate(price, datasets, config)

    def extract_features(
        self,
        result: AnalysisResult,
        datasets: dict[str, TimeframeDataset],
        current_price: Optional[float] = None,
    ) -> list[FeatureVector]:
        """Feature vectors for every line and pattern in a result.

        A subject whose features cannot be computed is logged and skipped.
        """
        vectors = extract_line_features(result.lines, datasets, result.patterns, current_price)
        available = list(datasets)
        for pattern in result.patterns:
            dataset = datasets.get(pattern.timeframe)
            if dataset is None:
                continue
            extractor = FeatureExtractor(dataset, current_price, available)
            vector = self._stage(
                "pattern_features", lambda p=pattern: extractor.extract_pattern(p), None, result.symbol, pattern.timeframe,
            )
            if vector is not None:
                vectors.append(vector)
        return vectors

    # ──────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────

    def _detect_patterns(self, datasets: dict[str, TimeframeDataset], config: DetectionConfig) -> list[PatternCandidate]:
        if not datasets or config.max_patterns == 0:
            return []
        tf = config.pattern_timeframe if config.pattern_timeframe in datasets else next(iter(datasets))
        candidates = self.patterns.scan(datasets[tf], min_confidence=config.pattern_min_confidence)
        return rank_patterns(candidates, config.max_patterns)

    @staticmethod
    def _summarize(
        lines: list[DetectedLine],
        zones: list,
        patterns: list[PatternCandidate],
        elapsed_ms: float,
    ) -> DetectionSummary:
        return DetectionSummary(
            total_lines=len(lines),
            high_confidence_lines=sum(1 for l in lines if l.confidence >= HIGH_CONFIDENCE),
            multi_timeframe_lines=sum(1 for l in lines if l.timeframe_count >= 2),
            average_strength=round(sum(l.strength for l in lines) / len(lines), 6) if lines else 0.0,
            zone_count=len(zones),
            pattern_count=len(patterns),
            detection_time_ms=round(elapsed_ms, 3),
        )

    @staticmethod
    def _stage(name: str, fn: Callable[[], T], default: T, symbol: str, timeframe: Optional[str] = None) -> T:
        try:
            return fn()
        except Exception as exc:
            log.warning(
                "analysis.stage_failed",
                stage=name,
                symbol=symbol,
                timeframe=timeframe,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return default

    def _publish(self, result: AnalysisResult) -> None:
        if self.sink is None:
            return
        try:
            self.sink.publish(result.to_records())
        except Exception as exc:
            log.warning("analysis.sink_failed", symbol=result.symbol, error=str(exc))

