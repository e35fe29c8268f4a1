"""
Levelscope: Models, Config & Validators Test Suite

Schema invariants, option validation and input validators.
"""

import sys

import pytest

sys.path.insert(0, "backend")


def _touch(price: float, time: int = 0, index: int = 0, timeframe: str = "1h"):
    from levelscope.models import TouchPoint, TouchType

    return TouchPoint(
        time=time,
        index=index,
        price=price,
        timeframe=timeframe,
        touch_type=TouchType.WICK,
        classifications=(TouchType.WICK,),
    )


# ═══════════════════════════════════════════════
#  MODELS
# ═══════════════════════════════════════════════

class TestModels:
    """Pydantic records and their invariants."""

    def test_candle_accepts_inconsistent_ohlc(self):
        from levelscope.models import Candle
        candle = Candle(time=1, open=10, high=5, low=20, close=10)
        assert candle.high < candle.low
        assert candle.volume == 0.0

    def test_dataset_helpers(self):
        from factories import make_dataset, range_candles
        ds = make_dataset("1h", range_candles(40))
        assert ds.size == 40
        assert ds.last_price == ds.candles[-1].close
        assert ds.weight == 0.30

    def test_dataset_weight_bounds(self):
        from pydantic import ValidationError
        from levelscope.models import TimeframeDataset
        with pytest.raises(ValidationError):
            TimeframeDataset(timeframe="1h", candles=(), weight=0)
        with pytest.raises(ValidationError):
            TimeframeDataset(timeframe="1h", candles=(), weight=1.5)

    def test_line_requires_two_touches(self):
        from pydantic import ValidationError
        from levelscope.models import DetectedLine, LineKind
        with pytest.raises(ValidationError):
            DetectedLine(
                id="x", kind=LineKind.SUPPORT, side=LineKind.SUPPORT, price=100.0,
                touch_points=(_touch(100.0),), strength=0.5, confidence=0.5,
                supporting_timeframes=("1h",),
            )

    def test_line_strength_bounds(self):
        from pydantic import ValidationError
        from levelscope.models import DetectedLine, LineKind
        with pytest.raises(ValidationError):
            DetectedLine(
                id="x", kind=LineKind.SUPPORT, side=LineKind.SUPPORT, price=100.0,
                touch_points=(_touch(100.0), _touch(100.1, 60, 1)), strength=1.2, confidence=0.5,
                supporting_timeframes=("1h",),
            )

    def test_trendline_requires_slope(self):
        from pydantic import ValidationError
        from levelscope.models import DetectedLine, LineKind
        with pytest.raises(ValidationError):
            DetectedLine(
                id="t", kind=LineKind.TRENDLINE, side=LineKind.SUPPORT,
                touch_points=(_touch(100.0), _touch(101.0, 60, 1)), strength=0.5, confidence=0.5,
                supporting_timeframes=("1h",),
            )

    def test_trendline_price_at(self):
        from levelscope.models import DetectedLine, LineKind
        line = DetectedLine(
            id="t", kind=LineKind.TRENDLINE, side=LineKind.SUPPORT, slope=0.5, intercept=10.0,
            touch_points=(_touch(10.0, 0, 0), _touch(40.0, 60, 1)), strength=0.5, confidence=0.5,
            supporting_timeframes=("1h",),
        )
        assert not line.is_horizontal
        assert line.price_at(60) == 40.0
        assert line.first_touch == 0
        assert line.last_touch == 60
        d = line.to_dict()
        assert d["touch_count"] == 2
        assert d["kind"] == "trendline"

    def test_price_range_order(self):
        from pydantic import ValidationError
        from levelscope.models import PriceRange
        r = PriceRange(min=99.0, center=100.0, max=101.0)
        assert r.width == 2.0
        assert r.contains(100.5)
        with pytest.raises(ValidationError):
            PriceRange(min=100.0, center=100.0, max=100.0)
        with pytest.raises(ValidationError):
            PriceRange(min=99.0, center=102.0, max=101.0)

    def test_pattern_window_order(self):
        from pydantic import ValidationError
        from levelscope.models import Implication, PatternCandidate, PatternType
        with pytest.raises(ValidationError):
            PatternCandidate(
                pattern_type=PatternType.DOUBLE_TOP, confidence=0.8, start_index=10, end_index=10,
                start_time=0, end_time=0, key_points=(), implication=Implication.BEARISH,
            )

    def test_records_are_frozen(self):
        from pydantic import ValidationError
        from levelscope.models import Candle
        candle = Candle(time=1, open=1, high=2, low=0.5, close=1.5)
        with pytest.raises(ValidationError):
            candle.close = 3.0

    def test_result_records_tagged(self):
        from levelscope.models import AnalysisResult
        result = AnalysisResult(symbol="BTCUSDT", timeframes_used=("1h",))
        records = result.to_records()
        assert records == [{"record_type": "summary", "symbol": "BTCUSDT", **result.summary.to_dict()}]


# ═══════════════════════════════════════════════
#  DETECTION CONFIG
# ═══════════════════════════════════════════════

class TestDetectionConfig:
    """Analysis options and their validation."""

    def test_defaults(self):
        from levelscope.models import DetectionConfig
        config = DetectionConfig()
        assert config.min_timeframes == 2
        assert config.strength_threshold == 0.6
        assert config.min_touch_count == 2
        assert config.tolerance == pytest.approx(0.005)

    def test_from_options(self):
        from levelscope.models import DetectionConfig
        config = DetectionConfig.from_options({"min_timeframes": 3, "price_tolerance_percent": 1.0})
        assert config.min_timeframes == 3
        assert config.tolerance == pytest.approx(0.01)

    def test_from_options_none(self):
        from levelscope.models import DetectionConfig
        assert DetectionConfig.from_options(None) == DetectionConfig()

    @pytest.mark.parametrize("options,field", [
        ({"min_timeframes": 0}, "min_timeframes"),
        ({"strength_threshold": 1.5}, "strength_threshold"),
        ({"min_touch_count": 1}, "min_touch_count"),
        ({"price_tolerance_percent": 0}, "price_tolerance_percent"),
        ({"pattern_timeframe": "2h"}, "pattern_timeframe"),
        ({"unknown_option": True}, "unknown_option"),
    ])
    def test_invalid_options(self, options, field):
        from levelscope.errors import ConfigurationError
        from levelscope.models import DetectionConfig
        with pytest.raises(ConfigurationError) as exc_info:
            DetectionConfig.from_options(options)
        assert [e["field"] for e in exc_info.value.errors] == [field]

    def test_configuration_error_is_value_error(self):
        from levelscope.errors import ConfigurationError
        assert issubclass(ConfigurationError, ValueError)


# ═══════════════════════════════════════════════
#  CONFIG & VALIDATORS
# ═══════════════════════════════════════════════

class TestConfig:
    """Settings and the timeframe table."""

    def test_profiles_weights_in_range(self):
        from levelscope.config import TIMEFRAME_PROFILES
        for profile in TIMEFRAME_PROFILES.values():
            assert 0 < profile.weight <= 1
            assert profile.limit > 0

    def test_timeframe_rank(self):
        from levelscope.config import timeframe_rank
        assert timeframe_rank("1m") < timeframe_rank("1h") < timeframe_rank("1w")

    def test_default_timeframes(self):
        from levelscope.config import Settings
        settings = Settings(default_timeframes="1h, 4h ,1d")
        assert settings.default_timeframe_list == ["1h", "4h", "1d"]
        assert not settings.is_production

    def test_settings_cached(self):
        from levelscope.config import get_settings
        assert get_settings() is get_settings()


class TestValidators:
    """Symbol, timeframe and price validators."""

    def test_symbol_normalized(self):
        from levelscope.utils import validate_symbol
        assert validate_symbol(" btcusdt ") == "BTCUSDT"
        assert validate_symbol("BRK.B") == "BRK.B"

    @pytest.mark.parametrize("raw", ["", "   ", "BTC USDT", "BTC$"])
    def test_symbol_invalid(self, raw):
        from levelscope.errors import ConfigurationError
        from levelscope.utils import validate_symbol
        with pytest.raises(ConfigurationError) as exc_info:
            validate_symbol(raw)
        assert exc_info.value.errors[0]["field"] == "symbol"

    def test_timeframes_dedup_keeps_order(self):
        from levelscope.utils import validate_timeframes
        assert validate_timeframes(["4h", "1h", "4h"]) == ["4h", "1h"]

    def test_timeframes_unknown(self):
        from levelscope.errors import ConfigurationError
        from levelscope.utils import validate_timeframes
        with pytest.raises(ConfigurationError) as exc_info:
            validate_timeframes(["1h", "2h", "3d"])
        assert len(exc_info.value.errors) == 2

    def test_timeframes_empty(self):
        from levelscope.errors import ConfigurationError
        from levelscope.utils import validate_timeframes
        with pytest.raises(ConfigurationError):
            validate_timeframes([])

    @pytest.mark.parametrize("price", [0, -5, float("nan"), float("inf"), "abc"])
    def test_price_invalid(self, price):
        from levelscope.errors import ConfigurationError
        from levelscope.utils import validate_price
        with pytest.raises(ConfigurationError):
            validate_price(price)

    def test_price_valid(self):
        from levelscope.utils import validate_price
        assert validate_price("50000") == 50000.0
