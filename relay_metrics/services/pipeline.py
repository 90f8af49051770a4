"""Scrape cycle orchestration.

One cycle: single-flight lock -> fetch -> parse -> counter deltas -> time
buckets -> derived metrics -> enhanced cache entry. A cycle that fails
before the counter tracker advances its generation leaves every cache slot
untouched.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from relay_metrics.lib.clock import Clock, epoch_seconds, utc_now
from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.distributed_tracing import new_cycle_id
from relay_metrics.lib.errors import CycleInProgressError, ExpositionParseError, ScrapeError, StaleSnapshotError
from relay_metrics.lib.kv_store import KeyValueStore
from relay_metrics.lib.metrics import record_scrape_cycle
from relay_metrics.models.samples import ProcessedSnapshot
from relay_metrics.services.counter_tracker import CounterDeltaTracker
from relay_metrics.services.derived_metrics import DerivedMetrics, DerivedMetricsAnalyzer
from relay_metrics.services.exposition_parser import parse_exposition
from relay_metrics.services.scraper import MetricsScraper
from relay_metrics.services.time_buckets import TimeBucketStore
from relay_metrics.services.upload_tracker import read_upload_counters

logger = logging.getLogger(__name__)

CYCLE_LOCK = 'scrape_cycle'
PROCESSED_KEY = 'metrics:processed'
ENHANCED_KEY = 'metrics:enhanced'
PREVIOUS_KEY = 'metrics:previous_processed'


@dataclass
class CycleResult:
    cycle_id: str
    generation: int
    snapshot: ProcessedSnapshot
    derived: DerivedMetrics
    enhanced: Dict[str, Any] = field(default_factory=dict)
    samples_parsed: int = 0
    duration_seconds: float = 0.0


class ScrapePipeline:
    """Runs scrape cycles against one metrics source.

    Args:
        store: Shared key-value store (lock, previous totals, buckets, caches)
        settings: Pipeline settings
        scraper: HTTP client for the source (built from settings if omitted)
        clock: Source of "now" (naive UTC)
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[PipelineSettings] = None,
        scraper: Optional[MetricsScraper] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.scraper = scraper or MetricsScraper(self.settings)
        self.clock = clock
        self.tracker = CounterDeltaTracker(
            store,
            label_filter=self.settings.label_filter,
            ttl_seconds=self.settings.previous_totals_ttl_seconds,
            clock=clock,
        )
        self.time_buckets = TimeBucketStore(
            store,
            minute_ttl_seconds=self.settings.minute_bucket_ttl_seconds,
            hour_ttl_seconds=self.settings.hour_bucket_ttl_seconds,
        )
        self.analyzer = DerivedMetricsAnalyzer(
            interval_seconds=self.settings.scrape_interval_seconds,
            thresholds=self.settings.thresholds,
        )

    def previous_snapshot(self) -> Optional[ProcessedSnapshot]:
        """Snapshot of the last successful cycle, kept apart from the reader caches."""
        data = self.store.get(PREVIOUS_KEY)
        return ProcessedSnapshot.model_validate(data) if data else None

    async def run_cycle(self, refresh: bool = False) -> CycleResult:
        """Run one scrape cycle.

        With `refresh`, the reader caches are dropped once the new snapshot is
        ready, inside the lock. A refresh that fails leaves them as they were.

        Raises:
            CycleInProgressError: Another cycle holds the lock
            ScrapeError: The /metrics fetch failed after retries
            ExpositionParseError: The payload could not be decoded
            StaleSnapshotError: A concurrent cycle advanced the previous totals first
        """
        cycle_id = new_cycle_id('cycle')
        token = self.store.acquire_lock(CYCLE_LOCK, self.settings.cycle_lock_ttl_seconds)
        if token is None:
            record_scrape_cycle('skipped')
            logger.info(f'Scrape cycle {cycle_id} skipped: another cycle is running')
            raise CycleInProgressError('A scrape cycle is already running')

        started = time.perf_counter()
        try:
            captured_at = self.clock()
            try:
                payload = await self.scraper.fetch_exposition()
            except ScrapeError as e:
                record_scrape_cycle('fetch_failed')
                logger.error(
                    f'Scrape cycle {cycle_id} aborted: {e} (after {e.attempts} attempts)',
                    extra={'cycle_id': cycle_id, 'url': e.url, 'status_code': e.status_code},
                )
                raise
            usage = await self.scraper.fetch_usage()

            try:
                samples = list(parse_exposition(payload))
            except ExpositionParseError:
                record_scrape_cycle('error')
                raise

            previous = self.previous_snapshot()
            try:
                snapshot = self.tracker.process(samples, captured_at=captured_at, usage=usage)
            except StaleSnapshotError:
                record_scrape_cycle('stale')
                raise

            if refresh:
                self.clear_cached_metrics()
            self.store.put(PREVIOUS_KEY, snapshot.model_dump(mode='json'), self.settings.previous_totals_ttl_seconds)
            self.store.put(PROCESSED_KEY, snapshot.model_dump(mode='json'), self.settings.snapshot_ttl_seconds)
            self.time_buckets.record_snapshot(snapshot)

            derived = self.analyzer.analyze(snapshot, previous)
            processed_at = self.clock()
            enhanced = {
                **snapshot.summary(),
                'upload_metrics': derived.model_dump(),
                'upload_tracking': read_upload_counters(self.store, processed_at),
                'processed_at': processed_at.isoformat(),
                'processed_timestamp': epoch_seconds(processed_at),
            }
            self.store.put(ENHANCED_KEY, enhanced, self.settings.snapshot_ttl_seconds)

            duration = time.perf_counter() - started
            record_scrape_cycle('success', duration)
            logger.info(
                f'Scrape cycle {cycle_id} completed: generation {snapshot.generation}, '
                f'{len(samples)} samples in {duration * 1000:.1f}ms',
                extra={'cycle_id': cycle_id, 'generation': snapshot.generation},
            )
            return CycleResult(
                cycle_id=cycle_id,
                generation=snapshot.generation,
                snapshot=snapshot,
                derived=derived,
                enhanced=enhanced,
                samples_parsed=len(samples),
                duration_seconds=duration,
            )
        finally:
            self.store.release_lock(CYCLE_LOCK, token)

    def clear_cached_metrics(self) -> None:
        """Drop the reader-facing processed and enhanced snapshots. The previous snapshot stays."""
        self.store.delete(PROCESSED_KEY)
        self.store.delete(ENHANCED_KEY)
