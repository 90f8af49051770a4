"""Upload lifecycle tracker.

Records prepared / completed / failed events for chunked uploads. Each
upload_id owns exactly one `upload_metrics` row that moves
prepared -> completed | failed inside a single transaction (row lock where
the database supports it, plus the unique upload_id constraint). Real-time
counters live in the key-value store and are best-effort.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from relay_metrics.lib.clock import Clock, day_key, hour_key, start_of_hour, utc_now
from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.errors import (
    UploadEventValidationError,
    UploadPersistenceError,
    UploadStateError,
)
from relay_metrics.lib.kv_store import KeyValueStore
from relay_metrics.lib.metrics import record_upload_event
from relay_metrics.models.upload_events import (
    CompletedEvent,
    FailedEvent,
    PreparedEvent,
    parse_event,
)
from relay_metrics.models.upload_metric import UploadMetric
from relay_metrics.models.upload_metric_hourly import UploadMetricHourly

logger = logging.getLogger(__name__)

EVENT_TYPES = ('prepared', 'completed', 'failed')

# (lower bound inclusive, label); the upper bound is the next entry's lower bound
DURATION_BUCKETS: List[Tuple[float, str]] = [
    (0, '0-10s'),
    (10, '10-30s'),
    (30, '30-60s'),
    (60, '1-2m'),
    (120, '2-5m'),
    (300, '5m+'),
]
DURATION_BUCKET_LABELS = [label for _, label in DURATION_BUCKETS]

ACTIVITY_CACHE_KEY = 'uploads:activity'
AVG_DURATION_KEY = 'uploads:avg_duration'


def duration_bucket(seconds: float) -> str:
    """Map a duration to its bucket label; bins are [lower, upper)."""
    label = DURATION_BUCKETS[0][1]
    for lower, bucket_label in DURATION_BUCKETS:
        if seconds >= lower:
            label = bucket_label
        else:
            break
    return label


def empty_duration_histogram() -> Dict[str, int]:
    return {label: 0 for label in DURATION_BUCKET_LABELS}


def read_upload_counters(store: KeyValueStore, now: datetime) -> Dict[str, Any]:
    """Summarize the real-time upload counters held in the store."""
    totals = {t: int(store.get(f'uploads:{t}:total', 0)) for t in EVENT_TYPES}
    this_hour = {t: int(store.get(f'uploads:{t}:hourly:{hour_key(now)}', 0)) for t in EVENT_TYPES}
    prepared, completed, failed = totals['prepared'], totals['completed'], totals['failed']

    avg = store.get(AVG_DURATION_KEY) or {'sum': 0, 'count': 0}
    average = round(avg['sum'] / avg['count'], 2) if avg['count'] > 0 else 0.0

    return {
        'active_uploads': max(0, prepared - completed - failed),
        'total_prepared': prepared,
        'total_completed': completed,
        'total_failed': failed,
        'completion_rate': round(completed / prepared * 100, 2) if prepared > 0 else 0,
        'average_duration_seconds': average,
        'duration_buckets': {
            label: int(store.get(f'uploads:duration_bucket:{label}', 0))
            for label in DURATION_BUCKET_LABELS
        },
        'events': {
            'prepared_last_hour': this_hour['prepared'],
            'completed_last_hour': this_hour['completed'],
            'failed_last_hour': this_hour['failed'],
        },
    }


@dataclass
class RecordedEvent:
    """Outcome of one ingested event."""

    upload_id: str
    event_type: str
    status: str
    correlated: bool
    upload_duration: Optional[int] = None
    duration_bucket: Optional[str] = None
    duplicate: bool = False

    @classmethod
    def from_row(cls, row: UploadMetric, correlated: bool, bucket: Optional[str] = None,
                 duplicate: bool = False) -> 'RecordedEvent':
        return cls(
            upload_id=row.upload_id,
            event_type=row.event_type,
            status=row.status,
            correlated=correlated,
            upload_duration=row.upload_duration,
            duration_bucket=bucket,
            duplicate=duplicate,
        )


class UploadLifecycleTracker:
    """Durable upload rows plus real-time counters.

    Args:
        db: SQLAlchemy session; the tracker commits its own transactions
        store: Key-value store holding the real-time counters
        settings: Counter TTLs and activity cache lifetime
        clock: Source of "now" (naive UTC)
    """

    def __init__(
        self,
        db: Session,
        store: KeyValueStore,
        settings: Optional[PipelineSettings] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Event ingestion
    # ------------------------------------------------------------------

    def record_prepared(
        self,
        upload_id: str,
        user_id: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RecordedEvent:
        """Insert the `prepared` row and bump the prepared counters.

        A repeated prepared event for a still-prepared upload is a no-op.

        Raises:
            UploadEventValidationError: Missing or invalid fields
            UploadStateError: The upload already completed or failed
            UploadPersistenceError: The durable write failed
        """
        event = parse_event(PreparedEvent, {
            'upload_id': upload_id,
            'user_id': user_id,
            'metadata': metadata or {},
        })
        now = self.clock()

        def apply(row: Optional[UploadMetric]) -> RecordedEvent:
            if row is not None:
                if row.event_type == 'prepared':
                    logger.info(f'Duplicate prepared event ignored for upload {event.upload_id}')
                    return RecordedEvent.from_row(row, correlated=True, duplicate=True)
                raise UploadStateError(event.upload_id, row.event_type, 'prepared')

            meta = event.metadata
            row = UploadMetric(
                upload_id=event.upload_id,
                user_id=event.user_id,
                event_type='prepared',
                status='ready',
                file_size=meta.file_size,
                file_name=meta.file_name,
                chunk_count=meta.chunk_count,
                chunk_size=meta.chunk_size,
                estimated_duration=meta.estimated_duration,
                prepared_at=now,
                created_at=now,
                updated_at=now,
            )
            self.db.add(row)
            self.db.flush()
            return RecordedEvent.from_row(row, correlated=True)

        result = self._transition(event.upload_id, event.user_id, 'prepared', apply)
        if not result.duplicate:
            self._bump_event_counters('prepared', now)
            record_upload_event('prepared', correlated=True)
            logger.info(
                f'Upload prepared recorded: {event.upload_id}',
                extra={'upload_id': event.upload_id, 'user_id': event.user_id},
            )
        return result

    def record_completed(
        self,
        upload_id: str,
        video_id: int,
        user_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RecordedEvent:
        """Transition the upload to `completed`, or synthesize a completed row.

        Raises:
            UploadEventValidationError: Missing or invalid fields
            UploadStateError: The upload already completed or failed
            UploadPersistenceError: The durable write failed
        """
        event = parse_event(CompletedEvent, {
            'upload_id': upload_id,
            'user_id': user_id,
            'video_id': video_id,
            'metadata': metadata or {},
        })
        meta = event.metadata
        now = self.clock()
        timing: Dict[str, Optional[float]] = {'seconds': None}

        def apply(row: Optional[UploadMetric]) -> RecordedEvent:
            if row is None:
                row = self._new_row(event.upload_id, event.user_id, now)
                row.file_size = meta.file_size
                row.file_name = meta.file_name
                row.chunk_count = meta.chunk_count
                seconds = meta.upload_duration
                correlated = False
            elif row.is_terminal:
                raise UploadStateError(event.upload_id, row.event_type, 'completed')
            else:
                seconds = self._elapsed(row, now)
                correlated = True

            transferred = _first_not_none(meta.final_file_size, meta.file_size, row.file_size, 0)
            row.video_id = event.video_id
            row.event_type = 'completed'
            row.status = 'completed'
            row.completed_at = now
            row.processing_time = meta.processing_time
            row.bytes_uploaded = transferred
            row.percentage_completed = 100
            row.upload_duration = int(seconds) if seconds is not None else None
            row.upload_speed = round(transferred / seconds, 2) if seconds and transferred else None
            row.updated_at = now
            self.db.flush()

            timing['seconds'] = seconds
            bucket = duration_bucket(seconds) if seconds is not None else None
            return RecordedEvent.from_row(row, correlated=correlated, bucket=bucket)

        result = self._transition(event.upload_id, event.user_id, 'completed', apply)

        self._bump_event_counters('completed', now)
        if timing['seconds'] is not None:
            self._record_duration(timing['seconds'])
        record_upload_event('completed', correlated=result.correlated)
        if not result.correlated:
            logger.warning(
                f'Upload {event.upload_id} completed without a prepared event; synthesized row',
                extra={'upload_id': event.upload_id, 'user_id': event.user_id},
            )
        return result

    def record_failed(
        self,
        upload_id: str,
        failure: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
    ) -> RecordedEvent:
        """Transition the upload to `failed`, or synthesize a failed row.

        Raises:
            UploadEventValidationError: Missing or invalid fields
            UploadStateError: The upload already completed or failed
            UploadPersistenceError: The durable write failed
        """
        event = parse_event(FailedEvent, {
            'upload_id': upload_id,
            'user_id': user_id,
            'failure_data': failure or {},
        })
        data = event.failure_data
        now = self.clock()

        def apply(row: Optional[UploadMetric]) -> RecordedEvent:
            if row is None:
                row = self._new_row(event.upload_id, event.user_id, now)
                row.file_size = data.file_size
                row.file_name = data.file_name
                row.chunk_count = data.chunk_count
                seconds = data.duration
                correlated = False
            elif row.is_terminal:
                raise UploadStateError(event.upload_id, row.event_type, 'failed')
            else:
                seconds = _first_not_none(self._elapsed(row, now), data.duration)
                correlated = True

            row.event_type = 'failed'
            row.status = 'failed'
            row.failed_at = now
            row.upload_duration = int(seconds) if seconds is not None else None
            row.percentage_completed = data.percentage_completed
            row.chunks_completed = data.chunks_completed if data.chunks_completed is not None else 0
            row.bytes_uploaded = data.bytes_uploaded
            row.error_message = data.message
            row.error_code = data.code
            row.error_stage = data.stage
            row.retryable = data.retryable
            row.attempt_number = data.attempt_number
            row.updated_at = now
            self.db.flush()

            bucket = duration_bucket(seconds) if seconds is not None else None
            return RecordedEvent.from_row(row, correlated=correlated, bucket=bucket)

        result = self._transition(event.upload_id, event.user_id, 'failed', apply)

        self._bump_event_counters('failed', now)
        record_upload_event('failed', correlated=result.correlated)
        logger.info(
            f'Upload failure recorded: {event.upload_id} ({data.code} at {data.stage})',
            extra={'upload_id': event.upload_id, 'user_id': event.user_id, 'correlated': result.correlated},
        )
        return result

    def _new_row(self, upload_id: str, user_id: Optional[int], now: datetime) -> UploadMetric:
        if user_id is None:
            raise UploadEventValidationError([
                {'field': 'user_id', 'message': 'Field required when no prepared event was recorded'}
            ])
        row = UploadMetric(upload_id=upload_id, user_id=user_id, created_at=now)
        self.db.add(row)
        return row

    @staticmethod
    def _elapsed(row: UploadMetric, now: datetime) -> Optional[float]:
        if row.prepared_at is None:
            return None
        return max(0.0, (now - row.prepared_at).total_seconds())

    def _transition(
        self,
        upload_id: str,
        user_id: Optional[int],
        event_type: str,
        apply: Callable[[Optional[UploadMetric]], RecordedEvent],
    ) -> RecordedEvent:
        """Run find-or-create-then-transition in one transaction.

        A lost insert race (unique upload_id) is retried once, at which point
        the competing row is visible and the event becomes a transition.
        """
        for attempt in (1, 2):
            try:
                row = (
                    self.db.query(UploadMetric)
                    .filter(UploadMetric.upload_id == upload_id)
                    .with_for_update()
                    .one_or_none()
                )
                result = apply(row)
                self.db.commit()
                return result
            except (UploadStateError, UploadEventValidationError):
                self.db.rollback()
                raise
            except IntegrityError as e:
                self.db.rollback()
                if attempt == 1:
                    logger.info(f'Concurrent insert for upload {upload_id}; retrying as transition')
                    continue
                logger.error(
                    f'Failed to record upload {event_type}: {e}',
                    extra={'upload_id': upload_id, 'user_id': user_id, 'event_type': event_type},
                )
                raise UploadPersistenceError(f'Could not record {event_type} for {upload_id}', upload_id) from e
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(
                    f'Failed to record upload {event_type}: {e}',
                    extra={'upload_id': upload_id, 'user_id': user_id, 'event_type': event_type},
                )
                raise UploadPersistenceError(f'Could not record {event_type} for {upload_id}', upload_id) from e
        raise UploadPersistenceError(f'Could not record {event_type} for {upload_id}', upload_id)

    # ------------------------------------------------------------------
    # Real-time counters (best-effort)
    # ------------------------------------------------------------------

    def _bump_event_counters(self, event_type: str, now: datetime) -> None:
        s = self.settings
        try:
            self.store.increment(f'uploads:{event_type}:total', 1, s.upload_counter_ttl_seconds)
            self.store.increment(
                f'uploads:{event_type}:hourly:{hour_key(now)}', 1, s.upload_hourly_counter_ttl_seconds
            )
            self.store.increment(
                f'uploads:{event_type}:daily:{day_key(now)}', 1, s.upload_daily_counter_ttl_seconds
            )
        except Exception as e:
            logger.warning(f'Failed to update {event_type} upload counters: {e}')

    def _record_duration(self, seconds: float) -> None:
        ttl = self.settings.upload_counter_ttl_seconds
        try:
            self.store.increment(f'uploads:duration_bucket:{duration_bucket(seconds)}', 1, ttl)
            self.store.update(
                AVG_DURATION_KEY,
                lambda current: {
                    'sum': (current or {}).get('sum', 0) + seconds,
                    'count': (current or {}).get('count', 0) + 1,
                },
                ttl,
            )
        except Exception as e:
            logger.warning(f'Failed to update upload duration counters: {e}')

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_upload_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current upload counters, completion rate and duration histogram."""
        return read_upload_counters(self.store, now or self.clock())

    def get_upload_activity(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Database-derived activity for the last hour and last 24 hours (cached)."""
        cached = self.store.get(ACTIVITY_CACHE_KEY)
        if cached is not None:
            return cached

        activity = self._calculate_activity(now or self.clock())
        try:
            self.store.put(ACTIVITY_CACHE_KEY, activity, self.settings.upload_activity_cache_seconds)
        except Exception as e:
            logger.warning(f'Failed to cache upload activity: {e}')
        return activity

    def _window_stats(self, since: datetime) -> Any:
        m = UploadMetric
        completed = m.event_type == 'completed'
        return self.db.query(
            func.count(m.id).label('started'),
            func.count(case((completed, 1))).label('completed'),
            func.count(case((m.event_type == 'failed', 1))).label('failed'),
            func.avg(case((completed, m.upload_duration))).label('avg_duration'),
            func.sum(case((completed, m.bytes_uploaded))).label('total_bytes'),
            func.avg(case((completed, m.upload_speed))).label('avg_speed'),
        ).filter(m.created_at >= since).one()

    def _calculate_activity(self, now: datetime) -> Dict[str, Any]:
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(days=1)

        active = self.db.query(func.count(UploadMetric.id)).filter(
            UploadMetric.event_type == 'prepared',
            UploadMetric.created_at >= hour_ago,
        ).scalar() or 0

        hour = self._window_stats(hour_ago)
        day = self._window_stats(day_ago)

        durations = empty_duration_histogram()
        for (seconds,) in self.db.query(UploadMetric.upload_duration).filter(
            UploadMetric.event_type == 'completed',
            UploadMetric.created_at >= day_ago,
            UploadMetric.upload_duration.isnot(None),
        ):
            durations[duration_bucket(seconds)] += 1

        errors = {
            stage or 'unknown': count
            for stage, count in self.db.query(UploadMetric.error_stage, func.count(UploadMetric.id))
            .filter(UploadMetric.event_type == 'failed', UploadMetric.created_at >= day_ago)
            .group_by(UploadMetric.error_stage)
        }

        day_started = day.started or 0
        return {
            'active_uploads': active,
            'last_hour': {
                'prepared': hour.started or 0,
                'completed': hour.completed or 0,
                'failed': hour.failed or 0,
                'avg_duration': round(float(hour.avg_duration or 0), 2),
                'total_bytes': int(hour.total_bytes or 0),
                'avg_speed': round(float(hour.avg_speed or 0), 2),
            },
            'last_24_hours': {
                'prepared': day_started,
                'completed': day.completed or 0,
                'failed': day.failed or 0,
                'completion_rate': round((day.completed or 0) / day_started * 100, 2) if day_started else 0,
            },
            'duration_distribution': durations,
            'error_distribution': errors,
            'updated_at': now.isoformat(),
        }

    def get_hourly_rollups(self, hours: int = 24, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Rollup rows from the start of the hour `hours` ago, oldest first."""
        start = start_of_hour((now or self.clock()) - timedelta(hours=hours))
        rows = (
            self.db.query(UploadMetricHourly)
            .filter(UploadMetricHourly.hour >= start)
            .order_by(UploadMetricHourly.hour)
            .all()
        )
        return [row.to_dict() for row in rows]


def _first_not_none(*values):
    for value in values:
        if value is not None:
            return value
    return None
