"""Metrics API endpoints for the dashboard.

Read-only views over pre-aggregated results plus a manual refresh trigger.
Current metrics and time series are served from the cache and work without a
database; upload history endpoints need DATABASE_URL.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.database import get_optional_db_session
from relay_metrics.lib.errors import (
  CycleInProgressError,
  ExpositionParseError,
  ScrapeError,
  StaleSnapshotError,
)
from relay_metrics.lib.kv_store import KeyValueStore, get_kv_store
from relay_metrics.services.metrics_service import MetricsService
from relay_metrics.services.pipeline import ScrapePipeline
from relay_metrics.services.scraper import MetricsScraper

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/v1/metrics', tags=['Metrics'])


class TimeSeriesResponse(BaseModel):
  """Response for the time-series endpoint."""

  success: bool = Field(True, description='Always true for a served series')
  data: List[Dict[str, Any]] = Field(..., description='Zero-filled data points, oldest first')
  granularity: str = Field(..., description='minute or hour')
  period_hours: int = Field(..., description='Hours covered by the series')


class RefreshResponse(BaseModel):
  success: bool
  message: str
  generation: Optional[int] = None


def _require_database(db: Optional[Session]):
  if db is None:
    raise HTTPException(
      status_code=503, detail='Metrics service unavailable: database not configured'
    )


@router.get('/current')
async def get_current_metrics(
  store: KeyValueStore = Depends(get_kv_store),
  settings: PipelineSettings = Depends(get_settings),
):
  """Get the latest enhanced metrics with scraper status.

  Returns:
      Grouped connection, transfer, websocket and system metrics, derived
      upload patterns, and `scraper_status` (working, stale, last scraped)
  """
  return MetricsService(store, settings=settings).get_current_metrics()


@router.get('/time-series', response_model=TimeSeriesResponse)
async def get_time_series(
  granularity: str = Query('hour', pattern='^(minute|hour)$'),
  hours: int = Query(24, ge=1, le=168),
  store: KeyValueStore = Depends(get_kv_store),
  settings: PipelineSettings = Depends(get_settings),
  db: Optional[Session] = Depends(get_optional_db_session),
):
  """Get chart data.

  Args:
      granularity: "minute" (last hour) or "hour" (last `hours` hours)
      hours: Window for hour granularity
      store: Key-value store
      settings: Pipeline settings
      db: Optional database session (hourly upload events are merged when present)

  Returns:
      TimeSeriesResponse
  """
  service = MetricsService(store, db=db, settings=settings)
  return service.get_time_series(granularity=granularity, hours=hours)


@router.get('/uploads')
async def get_upload_metrics(
  store: KeyValueStore = Depends(get_kv_store),
  settings: PipelineSettings = Depends(get_settings),
):
  """Get real-time upload counters (active uploads, completion rate, durations)."""
  return MetricsService(store, settings=settings).get_upload_metrics()


@router.get('/uploads/activity')
async def get_upload_activity(
  store: KeyValueStore = Depends(get_kv_store),
  settings: PipelineSettings = Depends(get_settings),
  db: Optional[Session] = Depends(get_optional_db_session),
):
  """Get last-hour and last-24h upload activity from the database (cached 5 minutes)."""
  _require_database(db)
  return MetricsService(store, db=db, settings=settings).get_upload_activity()


@router.get('/uploads/hourly')
async def get_hourly_rollups(
  days: int = Query(1, ge=1, le=30),
  store: KeyValueStore = Depends(get_kv_store),
  settings: PipelineSettings = Depends(get_settings),
  db: Optional[Session] = Depends(get_optional_db_session),
):
  """Get hourly upload rollup rows for the last `days` days."""
  _require_database(db)
  rows = MetricsService(store, db=db, settings=settings).get_hourly_rollups(days=days)
  return {'data': rows, 'days': days, 'count': len(rows)}


@router.get('/source-health')
async def get_source_health(settings: PipelineSettings = Depends(get_settings)):
  """Probe the messaging server's WebSocket and metrics ports."""
  return await MetricsScraper(settings).check_health()


@router.post('/refresh', response_model=RefreshResponse)
async def refresh_metrics(
  store: KeyValueStore = Depends(get_kv_store),
  settings: PipelineSettings = Depends(get_settings),
):
  """Run a scrape cycle now and replace the cached snapshots with its result.

  Raises:
      409: A scrape cycle is already running
      502: The metrics source could not be scraped
  """
  pipeline = ScrapePipeline(store, settings)
  try:
    result = await pipeline.run_cycle(refresh=True)
  except (CycleInProgressError, StaleSnapshotError) as e:
    raise HTTPException(status_code=409, detail=str(e))
  except (ScrapeError, ExpositionParseError) as e:
    logger.error(f'Manual refresh failed: {e}')
    raise HTTPException(status_code=502, detail=f'Failed to refresh metrics: {e}')

  return RefreshResponse(success=True, message='Metrics refreshed', generation=result.generation)
