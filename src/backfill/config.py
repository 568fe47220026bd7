"""Configuration system using pydantic-settings with environment variable loading."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BinanceSettings(BaseSettings):
    """Binance USD-M futures upstream and request pacing settings."""

    model_config = SettingsConfigDict(env_prefix="BINANCE_")

    weight_limit: int = Field(default=6000, gt=0)  # per rolling window, as published by Binance
    weight_window_seconds: float = 60.0
    request_timeout_ms: int = 30_000
    max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = 1.0  # seconds, doubled per attempt
    page_limit: int = Field(default=1500, ge=1, le=1500)  # Binance klines hard maximum
    page_delay: float = 0.1  # pause between paginated calls
    exchange_info_weight: int = 10


class StorageSettings(BaseSettings):
    """Candle storage and bulk write settings."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    db_path: str = "data/candles.db"
    chunk_size: int = Field(default=5000, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = 0.5
    extent_recompute_threshold: int = 10_000


class WorkerSettings(BaseSettings):
    """Download worker pool settings."""

    model_config = SettingsConfigDict(env_prefix="WORKER_")

    concurrency: int = Field(default=2, ge=1)
    requeue_on_startup: bool = True


class GapFillSettings(BaseSettings):
    """Periodic gap detection over recent history.

    When enabled, every active symbol/timeframe that already has data is
    checked for holes over the last lookback_days and a download job is
    created to fill them.
    """

    model_config = SettingsConfigDict(env_prefix="GAPFILL_")

    enabled: bool = False
    interval_hours: float = 24.0
    lookback_days: int = 2
    pause_between_checks: float = 1.0  # seconds between symbol/timeframe checks


class ApiSettings(BaseSettings):
    """HTTP/WebSocket server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: str = "console"  # "json" in production
    binance: BinanceSettings = BinanceSettings()
    storage: StorageSettings = StorageSettings()
    worker: WorkerSettings = WorkerSettings()
    gap_fill: GapFillSettings = GapFillSettings()
    api: ApiSettings = ApiSettings()
