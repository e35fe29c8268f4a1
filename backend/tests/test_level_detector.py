"""
Levelscope: Touch & Level Detection Test Suite

Touch classification, horizontal levels across timeframes, trendlines.
"""

import sys

import pytest

sys.path.insert(0, "backend")


def _series(candles, timeframe="1h"):
    from levelscope.engines.series import SeriesArrays
    return SeriesArrays.from_candles(candles, timeframe)


# ═══════════════════════════════════════════════
#  SERIES MATH
# ═══════════════════════════════════════════════

class TestSeriesMath:
    """Swings, fits and reversal candles."""

    def test_find_swings(self):
        import numpy as np
        from levelscope.engines.series import find_swings
        data = np.array([5, 4, 3, 2, 1, 2, 3, 4, 5, 4, 3], dtype=float)
        assert find_swings(data, "low", order=2) == [(4, 1.0)]
        assert find_swings(data, "high", order=2) == [(8, 5.0)]

    def test_find_swings_skips_nan(self):
        import numpy as np
        from levelscope.engines.series import find_swings
        data = np.array([5, 4, np.nan, 2, 1, 2, 3, 4, 5], dtype=float)
        assert find_swings(data, "low", order=2) == []

    def test_fit_line_exact(self):
        import numpy as np
        from levelscope.engines.series import fit_line
        x = np.arange(10, dtype=float)
        fit = fit_line(x, 2 * x + 1)
        assert fit.slope == pytest.approx(2.0)
        assert fit.intercept == pytest.approx(1.0)
        assert fit.r_squared == pytest.approx(1.0)

    def test_fit_line_degenerate(self):
        import numpy as np
        from levelscope.engines.series import fit_line
        assert fit_line(np.array([1.0]), np.array([2.0])) is None
        assert fit_line(np.array([3.0, 3.0]), np.array([1.0, 2.0])) is None
        flat = fit_line(np.arange(5, dtype=float), np.full(5, 7.0))
        assert flat.slope == 0.0
        assert flat.r_squared == 1.0

    def test_fit_line_epoch_seconds(self):
        import numpy as np
        from levelscope.engines.series import fit_line
        t = 1_704_067_200 + np.arange(50, dtype=float) * 3600
        fit = fit_line(t, 100 + (t - t[0]) / 3600 * 0.5)
        assert fit.at(t[-1]) == pytest.approx(100 + 49 * 0.5)
        assert fit.r_squared == pytest.approx(1.0)

    def test_reversal_signatures(self):
        from levelscope.engines.series import reversal_signature
        from levelscope.models import Candle
        candles = [
            Candle(time=0, open=105, high=106, low=100, close=101),   # bearish body
            Candle(time=60, open=100.5, high=107, low=100, close=106),  # engulfs it
            Candle(time=120, open=105, high=105.5, low=99, close=105.2),  # hammer
        ]
        series = _series(candles)
        assert reversal_signature(series, 1) == "bullish_engulfing"
        assert reversal_signature(series, 2) == "bullish_pin_bar"
        assert reversal_signature(series, 5) is None


# ═══════════════════════════════════════════════
#  TOUCH DETECTOR
# ═══════════════════════════════════════════════

class TestTouchDetector:
    """Touch classification and grading."""

    def _candles(self):
        from levelscope.models import Candle
        return [
            Candle(time=0, open=101.0, high=102.0, low=100.0, close=100.05, volume=100),   # exact
            Candle(time=60, open=103.0, high=104.0, low=100.3, close=102.0, volume=100),   # wick
            Candle(time=120, open=100.4, high=101.0, low=100.1, close=100.9, volume=100),  # body
            Candle(time=180, open=108.0, high=109.0, low=107.0, close=108.5, volume=100),  # miss
        ]

    def test_classifications(self):
        from levelscope.engines.touch_detector import TouchDetector
        from levelscope.models import LineKind, TouchType
        analysis = TouchDetector().analyze(_series(self._candles()), 100.0, LineKind.SUPPORT, 0.5)
        assert analysis.count == 3
        exact, wick, body = analysis.touches
        assert exact.touch_type == TouchType.EXACT
        assert exact.classifications == (TouchType.WICK, TouchType.BODY, TouchType.EXACT)
        assert exact.price == 100.05
        assert wick.touch_type == TouchType.WICK
        assert wick.price == 100.3
        assert body.touch_type == TouchType.BODY
        assert analysis.type_counts() == {"wick": 1, "body": 1, "exact": 1}

    def test_every_touch_is_a_wick(self):
        from factories import range_candles
        from levelscope.engines.touch_detector import TouchDetector
        from levelscope.models import LineKind, TouchType
        analysis = TouchDetector().analyze(_series(range_candles(200)), 48_980.0, LineKind.SUPPORT, 250.0)
        assert analysis.count > 0
        for tp in analysis.touches:
            assert tp.classifications[0] == TouchType.WICK
            assert tp.touch_type == tp.classifications[-1]
            assert tp.strength > 0
        assert 0 <= analysis.quality_score <= 100

    def test_bounce_boosts_strength(self):
        from levelscope.engines.touch_detector import TouchDetector
        from levelscope.models import LineKind
        analysis = TouchDetector().analyze(_series(self._candles()), 100.0, LineKind.SUPPORT, 0.5)
        body = analysis.touches[2]
        # Next candle reaches 109: a 8.9% reaction off 100.1
        assert body.bounce_strength == pytest.approx(8.891109, rel=1e-4)
        assert body.strength > 1.0
        assert analysis.bounce_ratio == 1.0

    def test_volume_spike_boosts_strength(self):
        from levelscope.engines.touch_detector import TouchDetector
        from levelscope.models import Candle, LineKind
        candles = [
            Candle(time=i * 60, open=110.0, high=111.0, low=109.0, close=110.5, volume=100)
            for i in range(20)
        ]
        candles.append(Candle(time=1200, open=100.0, high=100.2, low=99.9, close=100.1, volume=300))
        candles.append(Candle(time=1260, open=100.0, high=100.2, low=99.9, close=100.1, volume=100))
        analysis = TouchDetector().analyze(_series(candles), 100.0, LineKind.SUPPORT, 0.5)
        loud, quiet = analysis.touches
        assert loud.volume_ratio == pytest.approx(3.0)
        assert loud.strength == pytest.approx(quiet.strength * 1.2, rel=1e-3)

    def test_resistance_uses_highs(self):
        from levelscope.engines.touch_detector import TouchDetector
        from levelscope.models import LineKind
        analysis = TouchDetector().analyze(_series(self._candles()), 109.0, LineKind.RESISTANCE, 0.5)
        assert [tp.index for tp in analysis.touches] == [3]

    def test_no_touches(self):
        from levelscope.engines.touch_detector import TouchDetector
        from levelscope.models import LineKind
        analysis = TouchDetector().analyze(_series(self._candles()), 50.0, LineKind.SUPPORT, 0.5)
        assert analysis.count == 0
        assert analysis.quality_score == 0.0
        assert analysis.type_counts() == {"wick": 0, "body": 0, "exact": 0}

    def test_line_quality(self):
        from levelscope.engines.touch_detector import TouchDetector
        from levelscope.models import LineKind
        detector = TouchDetector()
        analysis = detector.analyze(_series(self._candles()), 100.0, LineKind.SUPPORT, 0.5)
        quality = detector.line_quality(analysis.touches, analysis.quality_score)
        # exact + body of three touches; flat volume; every touch bounced
        assert quality.wick_body_ratio == pytest.approx(2 / 3, abs=1e-6)
        assert quality.volume_confirmation == 0.0
        assert quality.bounce_confirmation == 1.0
        assert quality.touch_quality == pytest.approx(analysis.quality_score, abs=1e-4)
        assert quality.overall_quality == pytest.approx(0.4 * analysis.quality_score + 20 * (2 / 3 + 1), abs=1e-3)

    def test_line_quality_without_touches(self):
        from levelscope.engines.touch_detector import TouchDetector
        from levelscope.models import LineQuality
        assert TouchDetector().line_quality([], 80.0) == LineQuality()


# ═══════════════════════════════════════════════
#  HORIZONTAL LEVELS
# ═══════════════════════════════════════════════

class TestHorizontalLevels:
    """Support/resistance across timeframes."""

    def test_flat_range_single_timeframe(self):
        from factories import make_dataset, range_candles
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig, LineKind
        datasets = {"1h": make_dataset("1h", range_candles(500))}
        lines = LevelDetector().detect_horizontal(datasets, DetectionConfig(min_timeframes=1))

        support = [l for l in lines if l.side == LineKind.SUPPORT]
        resistance = [l for l in lines if l.side == LineKind.RESISTANCE]
        assert any(abs(l.price - 49_000) <= 250 for l in support)
        assert any(abs(l.price - 51_000) <= 250 for l in resistance)
        for line in lines:
            assert line.touch_count >= 2
            assert line.strength >= 0.6
            assert line.supporting_timeframes == ("1h",)

    def test_flat_range_two_timeframes_merge(self):
        from factories import range_datasets
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig, LineKind
        lines = LevelDetector().detect_horizontal(range_datasets(), DetectionConfig())
        support = next(l for l in lines if l.side == LineKind.SUPPORT and abs(l.price - 49_000) <= 250)
        assert support.supporting_timeframes == ("1h", "4h")
        assert {tp.timeframe for tp in support.touch_points} == {"1h", "4h"}

    def test_single_timeframe_fails_two_timeframe_minimum(self):
        from factories import make_dataset, range_candles
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig
        datasets = {"1h": make_dataset("1h", range_candles(500))}
        assert LevelDetector().detect_horizontal(datasets, DetectionConfig(min_timeframes=2)) == []

    def test_scores_bounded_and_sorted(self):
        from factories import range_datasets
        from levelscope.engines.level_detector import LevelDetector, line_sort_key
        from levelscope.models import DetectionConfig
        lines = LevelDetector().detect_horizontal(range_datasets(), DetectionConfig(min_timeframes=1, strength_threshold=0))
        assert lines
        for line in lines:
            assert 0 <= line.strength <= 1
            assert 0 <= line.confidence <= 1
        assert lines == sorted(lines, key=line_sort_key)

    def test_deterministic(self):
        from factories import range_datasets
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig
        config = DetectionConfig(min_timeframes=1)
        first = LevelDetector().detect_horizontal(range_datasets(), config)
        second = LevelDetector().detect_horizontal(range_datasets(), config)
        assert [l.to_dict() for l in first] == [l.to_dict() for l in second]

    def test_raising_min_timeframes_never_adds_lines(self):
        from factories import range_datasets
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig
        detector = LevelDetector()
        counts = [
            len(detector.detect_horizontal(range_datasets(), DetectionConfig(min_timeframes=m)))
            for m in (1, 2, 3)
        ]
        assert counts[0] >= counts[1] >= counts[2]
        assert counts[2] == 0

    def test_lines_carry_quality(self):
        from factories import range_datasets
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig, TouchType
        lines = LevelDetector().detect_horizontal(range_datasets(), DetectionConfig())
        assert lines
        for line in lines:
            solid = sum(1 for tp in line.touch_points if tp.touch_type != TouchType.WICK)
            assert line.quality.wick_body_ratio == pytest.approx(solid / line.touch_count, abs=1e-6)
            assert 0 < line.quality.touch_quality <= 100
            assert 0 < line.quality.overall_quality <= 100

    def test_merge_counts_shared_candle_once(self):
        from factories import BASE_TIME, HOUR, make_dataset, range_candles
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectedLine, DetectionConfig, LineKind, TouchPoint, TouchType

        def level(price, indices, strength):
            touches = tuple(
                TouchPoint(
                    time=BASE_TIME + i * HOUR, index=i, price=price, timeframe="1h",
                    touch_type=TouchType.WICK, classifications=(TouchType.WICK,), strength=strength,
                )
                for i in indices
            )
            return DetectedLine(
                id=f"support-{price}", kind=LineKind.SUPPORT, side=LineKind.SUPPORT, price=price,
                touch_points=touches, strength=0.8, confidence=0.8, supporting_timeframes=("1h",),
            )

        # Two nearby clusters on one timeframe both claim candle 10
        per_timeframe = {"1h": [level(100.0, [3, 10], 0.7), level(100.2, [10, 20], 0.9)]}
        datasets = {"1h": make_dataset("1h", range_candles(50))}
        lines = LevelDetector().detect_horizontal(
            datasets, DetectionConfig(min_timeframes=1, strength_threshold=0), per_timeframe,
        )
        assert len(lines) == 1
        merged = lines[0]
        assert [tp.index for tp in merged.touch_points] == [3, 10, 20]
        assert merged.touch_count == 3
        # The stronger grading of the shared candle wins
        assert merged.touch_points[1].strength == 0.9

    def test_max_lines(self):
        from factories import range_datasets
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig
        lines = LevelDetector().detect_horizontal(
            range_datasets(), DetectionConfig(min_timeframes=1, strength_threshold=0, max_lines=1),
        )
        assert len(lines) == 1

    def test_short_series_yields_nothing(self):
        from factories import make_dataset, range_candles
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig
        datasets = {"1h": make_dataset("1h", range_candles(8))}
        assert LevelDetector().detect_horizontal(datasets, DetectionConfig(min_timeframes=1)) == []

    def test_malformed_candles_tolerated(self):
        from factories import make_dataset, range_candles
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import Candle, DetectionConfig
        candles = list(range_candles(200))
        candles[50] = Candle(time=candles[50].time, open=float("nan"), high=float("nan"), low=float("nan"), close=float("nan"))
        candles[60] = Candle(time=candles[60].time, open=50_000, high=48_000, low=52_000, close=50_000)
        candles[70], candles[71] = candles[71], candles[70]
        datasets = {"1h": make_dataset("1h", candles)}
        lines = LevelDetector().detect_horizontal(datasets, DetectionConfig(min_timeframes=1))
        for line in lines:
            assert 0 <= line.strength <= 1


# ═══════════════════════════════════════════════
#  TRENDLINES
# ═══════════════════════════════════════════════

class TestTrendlines:
    """Sloped lines fitted through swing points."""

    def _uptrend(self):
        from factories import candles_from_closes, make_dataset, rising_zigzag_closes
        return {"1h": make_dataset("1h", candles_from_closes(rising_zigzag_closes(200)))}

    def test_rising_support_found(self):
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig, LineKind
        lines = LevelDetector().detect_trendlines(self._uptrend(), DetectionConfig(min_timeframes=1))
        support = [l for l in lines if l.side == LineKind.SUPPORT]
        assert support
        for line in lines:
            assert line.kind == LineKind.TRENDLINE
            assert line.r_squared >= 0.7
            assert line.touch_count >= 2
        assert all(l.slope > 0 for l in support)

    def test_price_at_follows_trend(self):
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig, LineKind
        lines = LevelDetector().detect_trendlines(self._uptrend(), DetectionConfig(min_timeframes=1))
        line = next(l for l in lines if l.side == LineKind.SUPPORT)
        assert line.price_at(line.last_touch) > line.price_at(line.first_touch)

    def test_flat_range_has_no_trendlines(self):
        from factories import range_datasets
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig
        assert LevelDetector().detect_trendlines(range_datasets(), DetectionConfig(min_timeframes=1)) == []

    def test_r_squared_floor(self):
        from levelscope.engines.level_detector import LevelDetector
        from levelscope.models import DetectionConfig
        strict = DetectionConfig(min_timeframes=1, trendline_min_r_squared=1.0)
        assert LevelDetector().detect_trendlines(self._uptrend(), strict) == []
