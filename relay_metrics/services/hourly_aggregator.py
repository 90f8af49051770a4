"""Hourly upload rollups.

Summarizes the `upload_metrics` rows created in one closed hour into a single
`upload_metrics_hourly` row. The write is a native INSERT ... ON CONFLICT
(hour) DO UPDATE, so re-running an hour overwrites it and two concurrent runs
cannot create duplicates.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relay_metrics.lib.clock import Clock, previous_closed_hour, start_of_hour, utc_now
from relay_metrics.lib.errors import AggregationError
from relay_metrics.lib.metrics import record_hourly_rollup
from relay_metrics.models.upload_metric import UploadMetric
from relay_metrics.models.upload_metric_hourly import UploadMetricHourly
from relay_metrics.services.time_buckets import TimeBucketStore
from relay_metrics.services.upload_tracker import duration_bucket, empty_duration_histogram

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# (inclusive upper bound in bytes, label); larger files fall into '1GB+'
SIZE_BUCKETS = [
    (10 * MB, '0-10MB'),
    (50 * MB, '10-50MB'),
    (100 * MB, '50-100MB'),
    (500 * MB, '100-500MB'),
    (1024 * MB, '500MB-1GB'),
]
LARGEST_SIZE_BUCKET = '1GB+'

_UPSERT_INSERTS = {
    'postgresql': pg_insert,
    'sqlite': sqlite_insert,
}


def size_bucket(size_bytes: int) -> str:
    for upper, label in SIZE_BUCKETS:
        if size_bytes <= upper:
            return label
    return LARGEST_SIZE_BUCKET


def empty_size_histogram() -> Dict[str, int]:
    histogram = {label: 0 for _, label in SIZE_BUCKETS}
    histogram[LARGEST_SIZE_BUCKET] = 0
    return histogram


def summarize_uploads(rows: List[UploadMetric]) -> Dict[str, Any]:
    """Compute rollup values for the rows of one hour.

    Args:
        rows: upload_metrics rows created inside the hour

    Returns:
        Column values for upload_metrics_hourly (without `hour`)
    """
    completed = [r for r in rows if r.event_type == 'completed']
    failed = [r for r in rows if r.event_type == 'failed']

    durations = [r.upload_duration for r in completed if r.upload_duration is not None]
    speeds = [float(r.upload_speed) for r in completed if r.upload_speed is not None]

    duration_distribution = empty_duration_histogram()
    for seconds in durations:
        duration_distribution[duration_bucket(seconds)] += 1

    size_distribution = empty_size_histogram()
    for row in completed:
        if row.file_size is not None:
            size_distribution[size_bucket(row.file_size)] += 1

    error_distribution: Dict[str, int] = {}
    for row in failed:
        stage = row.error_stage or 'unknown'
        error_distribution[stage] = error_distribution.get(stage, 0) + 1

    total = len(rows)
    return {
        'total_uploads': total,
        'completed_uploads': len(completed),
        'failed_uploads': len(failed),
        'total_bytes': sum(r.bytes_uploaded or 0 for r in completed),
        'avg_duration': round(sum(durations) / len(durations), 2) if durations else None,
        'avg_speed': round(sum(speeds) / len(speeds), 2) if speeds else None,
        'completion_rate': round(len(completed) / total * 100, 2) if total > 0 else 0,
        'duration_distribution': duration_distribution,
        'size_distribution': size_distribution,
        'error_distribution': error_distribution,
    }


class HourlyAggregator:
    """Builds and upserts hourly rollups; also prunes old upload rows."""

    def __init__(
        self,
        db: Session,
        time_buckets: Optional[TimeBucketStore] = None,
        clock: Clock = utc_now,
    ):
        """Initialize aggregator.

        Args:
            db: SQLAlchemy database session
            time_buckets: Optional bucket store for the hour's connection statistics
            clock: Source of "now" (naive UTC)
        """
        self.db = db
        self.time_buckets = time_buckets
        self.clock = clock

    def aggregate_hour(self, hour: Optional[datetime] = None) -> Dict[str, Any]:
        """Aggregate one hour (default: the closed hour before now) and upsert it.

        Returns:
            The rollup values, plus `hour` and `connections` (not persisted)

        Raises:
            AggregationError: If reading or writing fails (transaction rolled back)
        """
        hour_start = start_of_hour(hour) if hour is not None else previous_closed_hour(self.clock())
        hour_end = hour_start + timedelta(hours=1)
        logger.info(f'Aggregating upload metrics for hour {hour_start.isoformat()}')

        try:
            rows = (
                self.db.query(UploadMetric)
                .filter(UploadMetric.created_at >= hour_start, UploadMetric.created_at < hour_end)
                .all()
            )
            values = summarize_uploads(rows)
            self.upsert_rollup(hour_start, values)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            record_hourly_rollup('error')
            logger.error(f'Hourly aggregation failed for {hour_start.isoformat()}: {e}', exc_info=True)
            raise AggregationError(f'Could not aggregate hour {hour_start.isoformat()}: {e}') from e

        record_hourly_rollup('success')
        logger.info(
            f'Aggregated {values["total_uploads"]} uploads for {hour_start.isoformat()} '
            f'({values["completed_uploads"]} completed, {values["failed_uploads"]} failed)'
        )

        result = {'hour': hour_start.isoformat(), **values}
        if self.time_buckets is not None:
            result['connections'] = self.time_buckets.connection_stats(hour_start)
        return result

    def upsert_rollup(self, hour_start: datetime, values: Dict[str, Any]) -> None:
        """INSERT ... ON CONFLICT (hour) DO UPDATE; created_at survives reruns."""
        dialect = self.db.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise AggregationError(f'Hourly rollup upsert is not supported on {dialect}')

        now = self.clock()
        stmt = insert(UploadMetricHourly.__table__).values(
            hour=hour_start, created_at=now, updated_at=now, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['hour'],
            set_={**{key: stmt.excluded[key] for key in values}, 'updated_at': stmt.excluded.updated_at},
        )
        self.db.execute(stmt)

    def cleanup_old_upload_metrics(self, days: int = 30) -> int:
        """Delete upload_metrics rows created more than `days` days ago.

        Returns:
            Number of rows deleted
        """
        cutoff = self.clock() - timedelta(days=days)
        logger.info(f'Cleaning up upload metrics older than {cutoff.isoformat()}')
        try:
            deleted = (
                self.db.query(UploadMetric)
                .filter(UploadMetric.created_at < cutoff)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise AggregationError(f'Could not clean up upload metrics: {e}') from e

        logger.info(f'Deleted {deleted} upload metric records older than {days} days')
        return deleted
