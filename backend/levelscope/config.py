"""
Levelscope: Configuration Management

Pydantic Settings: loads from .env, validates all configuration at startup.
Per-timeframe reliability weights and fetch limits live in
``TIMEFRAME_PROFILES`` so every component reads the same table.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class TimeframeProfile:
    """Static properties of one timeframe label."""
    label: str
    seconds: int
    weight: float      # reliability weight in (0, 1]
    limit: int         # candles requested per fetch


TIMEFRAME_PROFILES: dict[str, TimeframeProfile] = {
    "1m": TimeframeProfile("1m", 60, 0.10, 500),
    "5m": TimeframeProfile("5m", 300, 0.15, 400),
    "15m": TimeframeProfile("15m", 900, 0.20, 200),
    "30m": TimeframeProfile("30m", 1_800, 0.25, 300),
    "1h": TimeframeProfile("1h", 3_600, 0.30, 500),
    "4h": TimeframeProfile("4h", 14_400, 0.35, 400),
    "1d": TimeframeProfile("1d", 86_400, 0.15, 200),
    "1w": TimeframeProfile("1w", 604_800, 0.15, 100),
}


def timeframe_rank(label: str) -> int:
    """Position of a label from shortest to longest timeframe."""
    return list(TIMEFRAME_PROFILES).index(label)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Core ──
    app_env: str = "development"
    app_debug: bool = True

    # ── Aggregator ──
    cache_ttl_seconds: float = 30.0
    fetch_timeout_seconds: float = 10.0
    min_candles: int = 30
    default_timeframes: str = "15m,1h,4h,1d"

    # ── Pattern scan ──
    pattern_lookback: int = 200

    # ── Binance public market data ──
    binance_base_url: str = "https://api.binance.com"
    binance_timeout_seconds: float = 10.0

    @property
    def default_timeframe_list(self) -> list[str]:
        return [tf.strip() for tf in self.default_timeframes.split(",") if tf.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
