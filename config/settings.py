"""
Configuration settings for the Stop-High Scanner.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Market segment labels as they appear in the J-Quants listed-info master.
DEFAULT_TARGET_MARKETS = ["プライム", "スタンダード", "グロース"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API Keys
    jquants_api_key: Optional[str] = Field(None, description="J-Quants API V2 key (JQUANTS_API_KEY)")

    # J-Quants API
    jquants_base_url: str = "https://api.jquants.com/v2"
    request_timeout: float = Field(30.0, gt=0)

    # Universe
    target_markets: List[str] = Field(default_factory=lambda: list(DEFAULT_TARGET_MARKETS))
    min_price: float = Field(100.0, ge=0)
    max_price: float = Field(600.0, ge=0)
    max_stocks: Optional[int] = Field(None, gt=0)

    # Rate Limiting
    scan_delay_seconds: float = Field(0.6, ge=0)
    probe_delay_seconds: float = Field(0.2, ge=0)
    failure_budget: int = Field(10, gt=0)

    # Lookback windows
    history_months: int = Field(3, gt=0)
    max_lookback_days: int = Field(7, ge=0)

    # Detection
    stop_high_threshold: float = Field(0.13, gt=0)

    # "Today" is derived in the exchange's timezone when no reference date is given
    market_timezone: str = "Asia/Tokyo"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_json: bool = False  # File sink writes JSON records


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
