"""Read service for the dashboard.

Serves pre-aggregated results only: the enhanced snapshot written by the
scrape cycle, the minute/hour time buckets, the real-time upload counters and
the hourly rollup rows. Nothing here recomputes from raw samples.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relay_metrics.lib.clock import Clock, start_of_hour, utc_now
from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.kv_store import KeyValueStore
from relay_metrics.models.samples import ProcessedSnapshot
from relay_metrics.models.upload_metric_hourly import UploadMetricHourly
from relay_metrics.services.pipeline import ENHANCED_KEY, PROCESSED_KEY
from relay_metrics.services.time_buckets import TimeBucketStore
from relay_metrics.services.upload_tracker import UploadLifecycleTracker, read_upload_counters

logger = logging.getLogger(__name__)

MAX_HOURS = 168


class MetricsService:
    """Service for dashboard metrics retrieval.

    Cache-backed reads (current metrics, time series, upload counters) work
    without a database; rollup and activity reads need `db`.
    """

    def __init__(
        self,
        store: KeyValueStore,
        db: Optional[Session] = None,
        settings: Optional[PipelineSettings] = None,
        clock: Clock = utc_now,
    ):
        """Initialize metrics service.

        Args:
            store: Key-value store written by the scrape pipeline
            db: Optional SQLAlchemy database session
            settings: Pipeline settings
            clock: Source of "now" (naive UTC)
        """
        self.store = store
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.time_buckets = TimeBucketStore(
            store,
            minute_ttl_seconds=self.settings.minute_bucket_ttl_seconds,
            hour_ttl_seconds=self.settings.hour_bucket_ttl_seconds,
        )

    def get_current_metrics(self) -> Dict:
        """Latest enhanced metrics plus scraper status.

        Falls back to the processed snapshot when the enhanced entry is missing.
        """
        metrics = self.store.get(ENHANCED_KEY)
        if not metrics:
            processed = self.store.get(PROCESSED_KEY)
            metrics = {}
            if processed:
                metrics = ProcessedSnapshot.model_validate(processed).summary()

        metrics = dict(metrics)
        metrics['scraper_status'] = {
            'scraper_working': bool(metrics),
            'is_stale': self._is_stale(metrics.get('scraped_at')),
            'last_scraped': metrics.get('scraped_at'),
        }
        return metrics

    def _is_stale(self, scraped_at: Optional[str]) -> bool:
        if not scraped_at:
            return True
        try:
            scraped = datetime.fromisoformat(scraped_at)
        except ValueError:
            return True
        return scraped < self.clock() - timedelta(seconds=self.settings.stale_after_seconds)

    def get_time_series(self, granularity: str = 'hour', hours: int = 24) -> Dict:
        """Chart series: last 60 minutes by minute, or the last `hours` hours by hour.

        Args:
            granularity: "minute" or "hour"
            hours: Window for hour granularity (1-168)

        Returns:
            Dictionary with zero-filled, oldest-first data points
        """
        if granularity not in ('minute', 'hour'):
            raise ValueError(f'Unsupported granularity: {granularity}')
        hours = max(1, min(hours, MAX_HOURS))
        now = self.clock()

        if granularity == 'minute':
            data = self.time_buckets.minute_series(now, minutes=60)
            period_hours = 1
        else:
            data = self.time_buckets.hour_series(now, hours=hours)
            events = self._hourly_upload_events(start_of_hour(now) - timedelta(hours=hours - 1))
            for point in data:
                hour = datetime.fromtimestamp(point['timestamp'], timezone.utc).replace(tzinfo=None)
                point['upload_events'] = events.get(hour, {'prepared': 0, 'completed': 0, 'failed': 0})
            period_hours = hours

        logger.info(f'Time-series query: {granularity} ({len(data)} points)')
        return {
            'success': True,
            'data': data,
            'granularity': granularity,
            'period_hours': period_hours,
        }

    def _hourly_upload_events(self, since: datetime) -> Dict[datetime, Dict[str, int]]:
        if self.db is None:
            return {}
        try:
            rows = self.db.query(UploadMetricHourly).filter(UploadMetricHourly.hour >= since).all()
        except SQLAlchemyError as e:
            logger.warning(f'Failed to query hourly upload rollups: {e}')
            return {}
        return {
            row.hour: {
                'prepared': row.total_uploads,
                'completed': row.completed_uploads,
                'failed': row.failed_uploads,
            }
            for row in rows
        }

    def get_hourly_rollups(self, days: int = 1) -> List[Dict]:
        """Hourly rollup rows for the last `days` days, oldest first."""
        return self._tracker().get_hourly_rollups(hours=days * 24, now=self.clock())

    def get_upload_metrics(self) -> Dict:
        return read_upload_counters(self.store, self.clock())

    def get_upload_activity(self) -> Dict:
        return self._tracker().get_upload_activity(now=self.clock())

    def _tracker(self) -> UploadLifecycleTracker:
        if self.db is None:
            raise RuntimeError('A database session is required for upload history')
        return UploadLifecycleTracker(self.db, self.store, self.settings, self.clock)
