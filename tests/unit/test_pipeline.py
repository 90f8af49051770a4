"""Unit tests for scrape cycle orchestration."""

from unittest.mock import patch

import httpx
import pytest

from relay_metrics.lib.errors import CycleInProgressError, ExpositionParseError, ScrapeError
from relay_metrics.services.counter_tracker import PREVIOUS_TOTALS_KEY
from relay_metrics.services.pipeline import (
  CYCLE_LOCK,
  ENHANCED_KEY,
  PREVIOUS_KEY,
  PROCESSED_KEY,
  ScrapePipeline,
)
from relay_metrics.services.scraper import MetricsScraper


class FakeSource:
  """Serves a mutable exposition payload on /metrics; /usage is missing."""

  def __init__(self, payload, status_code=200):
    self.payload = payload
    self.status_code = status_code
    self.metrics_calls = 0

  def __call__(self, request):
    if request.url.path == '/usage':
      return httpx.Response(404)
    self.metrics_calls += 1
    return httpx.Response(self.status_code, text=self.payload)


@pytest.fixture
def source(sample_exposition):
  return FakeSource(sample_exposition)


@pytest.fixture
def pipeline(store, settings, clock, source):
  client = httpx.AsyncClient(transport=httpx.MockTransport(source))
  return ScrapePipeline(store, settings, scraper=MetricsScraper(settings, client=client), clock=clock)


class TestRunCycle:
  """Successful cycles."""

  @pytest.mark.asyncio
  async def test_first_cycle_writes_snapshots(self, pipeline, store):
    result = await pipeline.run_cycle()

    assert result.generation == 1
    assert result.samples_parsed == 10
    enhanced = store.get(ENHANCED_KEY)
    assert enhanced['connections']['current'] == 42
    assert enhanced['data_transfer']['bytes_received'] == 2048
    assert enhanced['upload_metrics']['upload_ratio'] == 20.0
    assert enhanced['upload_tracking']['active_uploads'] == 0
    assert enhanced['scraped_at'] == '2026-10-19T12:30:00'
    assert store.get(PROCESSED_KEY)['generation'] == 1
    assert 'usage' not in enhanced

  @pytest.mark.asyncio
  async def test_second_cycle_computes_deltas(self, pipeline, source, clock, store):
    await pipeline.run_cycle()
    source.payload = source.payload.replace(
      'soketi_new_connections_total{port="6001"} 100',
      'soketi_new_connections_total{port="6001"} 137',
    )
    clock.advance(seconds=10)

    result = await pipeline.run_cycle()

    assert result.generation == 2
    assert result.snapshot.counter_delta('soketi_new_connections_total') == 37
    assert result.derived.connection_events.connections_per_minute == 222.0
    assert store.get(ENHANCED_KEY)['connections']['new_since_last_scrape'] == 37

  @pytest.mark.asyncio
  async def test_records_time_buckets(self, pipeline, clock):
    await pipeline.run_cycle()

    point = pipeline.time_buckets.get_minute_bucket(clock.now)
    assert point['connections'] == 42
    assert pipeline.time_buckets.get_hour_bucket(clock.now)['count'] == 1

  @pytest.mark.asyncio
  async def test_lock_released_after_cycle(self, pipeline, store):
    await pipeline.run_cycle()

    assert store.get(f'lock:{CYCLE_LOCK}') is None


class TestFailedCycles:
  """Failures leave the caches untouched."""

  @pytest.mark.asyncio
  async def test_fetch_failure_writes_nothing(self, pipeline, source, store):
    source.status_code = 500

    with pytest.raises(ScrapeError):
      await pipeline.run_cycle()

    assert source.metrics_calls == 3
    assert store.get(PROCESSED_KEY) is None
    assert store.get(ENHANCED_KEY) is None
    assert store.get(PREVIOUS_TOTALS_KEY) is None
    assert store.get(f'lock:{CYCLE_LOCK}') is None

  @pytest.mark.asyncio
  async def test_fetch_failure_keeps_previous_snapshot(self, pipeline, source, store):
    await pipeline.run_cycle()
    before = store.get(ENHANCED_KEY)
    source.status_code = 502

    with pytest.raises(ScrapeError):
      await pipeline.run_cycle()

    assert store.get(ENHANCED_KEY) == before
    assert store.get(PREVIOUS_TOTALS_KEY)['generation'] == 1

  @pytest.mark.asyncio
  async def test_parse_failure_writes_nothing(self, pipeline, store):
    with patch(
      'relay_metrics.services.pipeline.parse_exposition',
      side_effect=ExpositionParseError('unreadable'),
    ):
      with pytest.raises(ExpositionParseError):
        await pipeline.run_cycle()

    assert store.get(PREVIOUS_TOTALS_KEY) is None
    assert store.get(ENHANCED_KEY) is None

  @pytest.mark.asyncio
  async def test_overlapping_cycle_is_refused(self, pipeline, source, store):
    store.acquire_lock(CYCLE_LOCK, 60)

    with pytest.raises(CycleInProgressError):
      await pipeline.run_cycle()

    assert source.metrics_calls == 0


class TestClearCachedMetrics:

  @pytest.mark.asyncio
  async def test_clears_snapshots_but_not_previous_totals(self, pipeline, store):
    await pipeline.run_cycle()

    pipeline.clear_cached_metrics()

    assert store.get(PROCESSED_KEY) is None
    assert store.get(ENHANCED_KEY) is None
    assert store.get(PREVIOUS_TOTALS_KEY) is not None
    assert store.get(PREVIOUS_KEY)['generation'] == 1


class TestRefreshCycle:
  """run_cycle(refresh=True), as used by the manual refresh endpoint."""

  def _bump_connections(self, source, clock):
    source.payload = source.payload.replace(
      'soketi_new_connections_total{port="6001"} 100',
      'soketi_new_connections_total{port="6001"} 137',
    )
    clock.advance(seconds=10)

  @pytest.mark.asyncio
  async def test_refresh_still_computes_rates(self, pipeline, source, clock):
    await pipeline.run_cycle()
    self._bump_connections(source, clock)

    result = await pipeline.run_cycle(refresh=True)

    assert result.derived.connection_events.connections_per_minute == 222.0

  @pytest.mark.asyncio
  async def test_rates_survive_cleared_reader_caches(self, pipeline, source, clock, store):
    await pipeline.run_cycle()
    pipeline.clear_cached_metrics()
    self._bump_connections(source, clock)

    result = await pipeline.run_cycle()

    assert result.derived.connection_events.connections_per_minute == 222.0
    assert store.get(ENHANCED_KEY)['generation'] == 2

  @pytest.mark.asyncio
  async def test_failed_refresh_keeps_reader_caches(self, pipeline, source, store):
    await pipeline.run_cycle()
    enhanced = store.get(ENHANCED_KEY)
    processed = store.get(PROCESSED_KEY)
    source.status_code = 503

    with pytest.raises(ScrapeError):
      await pipeline.run_cycle(refresh=True)

    assert store.get(ENHANCED_KEY) == enhanced
    assert store.get(PROCESSED_KEY) == processed

  @pytest.mark.asyncio
  async def test_locked_refresh_keeps_reader_caches(self, pipeline, store):
    await pipeline.run_cycle()
    enhanced = store.get(ENHANCED_KEY)
    store.acquire_lock(CYCLE_LOCK, 60)

    with pytest.raises(CycleInProgressError):
      await pipeline.run_cycle(refresh=True)

    assert store.get(ENHANCED_KEY) == enhanced
