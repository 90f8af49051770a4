"""Pipeline configuration.

Settings are read from environment variables (optionally seeded from
``.env`` / ``.env.local``). Every heuristic threshold used by the derived
metrics analyzer is a configurable constant here rather than something
derived from the data.
"""

import os
from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv(dotenv_path='.env')
load_dotenv(dotenv_path='.env.local')


def _env_int(name: str, default: int) -> int:
  value = os.getenv(name)
  return int(value) if value not in (None, '') else default


def _env_float(name: str, default: float) -> float:
  value = os.getenv(name)
  return float(value) if value not in (None, '') else default


def _env_bool(name: str, default: bool) -> bool:
  value = os.getenv(name)
  if value is None or value == '':
    return default
  return value.strip().lower() in ('1', 'true', 'yes', 'on')


class AnalyzerThresholds(BaseModel):
  """Fixed thresholds for the trend / intensity heuristics."""

  trend_increase_factor: float = Field(default=1.2, gt=1.0)
  trend_decrease_factor: float = Field(default=0.8, gt=0.0, lt=1.0)
  peak_connection_threshold: int = Field(default=10, ge=0)
  medium_intensity_bytes_per_second: float = Field(default=100_000, ge=0)
  high_intensity_bytes_per_second: float = Field(default=1_000_000, ge=0)
  upload_session_share: float = Field(default=0.7, ge=0.0, le=1.0)


class PipelineSettings(BaseModel):
  """Runtime settings for the scrape pipeline, trackers and aggregator.

  Attributes:
      source_host: Messaging server host (scheme optional)
      metrics_port: Port serving /metrics and /usage
      websocket_port: Port of the WebSocket API (health probe only)
      scrape_interval_seconds: Nominal seconds between scrape cycles
      scrape_timeout_seconds: Per-request timeout for scrape fetches
      scrape_max_attempts: Bounded retry count for a scrape fetch
      label_filter: Label pairs a sample must carry to be tracked
  """

  source_host: str = 'soketi'
  metrics_port: int = 9601
  websocket_port: int = 6001
  scraping_enabled: bool = True

  scrape_interval_seconds: float = Field(default=10.0, gt=0)
  scrape_timeout_seconds: float = Field(default=10.0, gt=0)
  scrape_max_attempts: int = Field(default=3, ge=1, le=10)
  scrape_backoff_seconds: float = Field(default=0.1, ge=0)
  label_filter: Dict[str, str] = Field(default_factory=lambda: {'port': '6001'})

  snapshot_ttl_seconds: int = 600
  previous_totals_ttl_seconds: int = 3600
  minute_bucket_ttl_seconds: int = 7200
  hour_bucket_ttl_seconds: int = 86400
  cycle_lock_ttl_seconds: int = 60
  stale_after_seconds: int = 120

  upload_counter_ttl_seconds: int = 3600
  upload_hourly_counter_ttl_seconds: int = 7200
  upload_daily_counter_ttl_seconds: int = 172800
  upload_activity_cache_seconds: int = 300
  upload_metrics_cleanup_days: int = 30

  webhook_state_ttl_seconds: int = 300
  webhook_minute_series_ttl_seconds: int = 3600
  webhook_hour_series_ttl_seconds: int = 86400

  database_url: Optional[str] = None
  cache_backend: str = 'memory'
  redis_url: str = 'redis://localhost:6379/0'
  cache_prefix: str = 'soketi'

  thresholds: AnalyzerThresholds = Field(default_factory=AnalyzerThresholds)

  @field_validator('cache_backend')
  @classmethod
  def validate_cache_backend(cls, v: str) -> str:
    """Only the in-memory and Redis stores exist."""
    if v not in ('memory', 'redis'):
      raise ValueError(f"cache_backend must be 'memory' or 'redis' (got {v!r})")
    return v

  @property
  def source_base_url(self) -> str:
    host = self.source_host if self.source_host.startswith('http') else f'http://{self.source_host}'
    return f'{host.rstrip("/")}:{self.metrics_port}'

  @property
  def websocket_url(self) -> str:
    host = self.source_host if self.source_host.startswith('http') else f'http://{self.source_host}'
    return f'{host.rstrip("/")}:{self.websocket_port}'

  @classmethod
  def from_env(cls) -> 'PipelineSettings':
    """Build settings from environment variables.

    Environment variables:
        SOKETI_HOST, SOKETI_METRICS_PORT, SOKETI_WEBSOCKET_PORT
        SOKETI_SCRAPING_ENABLED, SOKETI_SCRAPE_INTERVAL, SOKETI_SCRAPE_TIMEOUT
        SOKETI_SCRAPE_MAX_ATTEMPTS, SOKETI_CACHE_TTL, SOKETI_LABEL_PORT
        UPLOAD_METRICS_CLEANUP_DAYS, DATABASE_URL, CACHE_BACKEND, REDIS_URL
        TREND_INCREASE_FACTOR, TREND_DECREASE_FACTOR, PEAK_CONNECTION_THRESHOLD
        INTENSITY_MEDIUM_BPS, INTENSITY_HIGH_BPS

    Returns:
        PipelineSettings instance
    """
    label_port = os.getenv('SOKETI_LABEL_PORT', '6001')
    thresholds = AnalyzerThresholds(
      trend_increase_factor=_env_float('TREND_INCREASE_FACTOR', 1.2),
      trend_decrease_factor=_env_float('TREND_DECREASE_FACTOR', 0.8),
      peak_connection_threshold=_env_int('PEAK_CONNECTION_THRESHOLD', 10),
      medium_intensity_bytes_per_second=_env_float('INTENSITY_MEDIUM_BPS', 100_000),
      high_intensity_bytes_per_second=_env_float('INTENSITY_HIGH_BPS', 1_000_000),
    )
    return cls(
      source_host=os.getenv('SOKETI_HOST', 'soketi'),
      metrics_port=_env_int('SOKETI_METRICS_PORT', 9601),
      websocket_port=_env_int('SOKETI_WEBSOCKET_PORT', 6001),
      scraping_enabled=_env_bool('SOKETI_SCRAPING_ENABLED', True),
      scrape_interval_seconds=_env_float('SOKETI_SCRAPE_INTERVAL', 10.0),
      scrape_timeout_seconds=_env_float('SOKETI_SCRAPE_TIMEOUT', 10.0),
      scrape_max_attempts=_env_int('SOKETI_SCRAPE_MAX_ATTEMPTS', 3),
      snapshot_ttl_seconds=_env_int('SOKETI_CACHE_TTL', 600),
      label_filter={'port': label_port} if label_port else {},
      upload_metrics_cleanup_days=_env_int('UPLOAD_METRICS_CLEANUP_DAYS', 30),
      database_url=os.getenv('DATABASE_URL'),
      cache_backend=os.getenv('CACHE_BACKEND', 'memory'),
      redis_url=os.getenv('REDIS_URL', 'redis://localhost:6379/0'),
      thresholds=thresholds,
    )


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
  """Return the process settings (read once from the environment)."""
  return PipelineSettings.from_env()
