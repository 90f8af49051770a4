"""Unit tests for the minute/hour time-bucket store."""

from datetime import datetime, timedelta

import pytest

from relay_metrics.lib.clock import epoch_seconds
from relay_metrics.models.samples import CounterReading, ProcessedSnapshot
from relay_metrics.services.time_buckets import TimeBucketStore, fold_snapshot, hour_point


def snapshot(at, connections=0.0, messages_delta=0.0, messages_total=0.0, memory=None,
             received=0.0, sent=0.0, generation=1):
  gauges = {'soketi_connected': connections}
  if memory is not None:
    gauges['soketi_nodejs_heap_size_used_bytes'] = memory
  return ProcessedSnapshot(
    gauges=gauges,
    counters={
      'soketi_ws_messages_sent_total': CounterReading(total=messages_total, delta_since_last=messages_delta),
      'soketi_socket_received_bytes': CounterReading(total=received, delta_since_last=received),
      'soketi_socket_transmitted_bytes': CounterReading(total=sent, delta_since_last=sent),
    },
    captured_at=at,
    generation=generation,
  )


@pytest.fixture
def buckets(store):
  return TimeBucketStore(store)


class TestHourBucket:
  """Running aggregates per hour."""

  def test_fold_computes_avg_and_peak(self):
    at = datetime(2026, 10, 19, 12, 0, 0)
    bucket = None
    for value in [10, 30, 20]:
      bucket = fold_snapshot(bucket, snapshot(at, connections=value))

    stats = bucket['gauges']['soketi_connected']
    assert bucket['count'] == 3
    assert stats['avg'] == pytest.approx(20.0)
    assert stats['peak'] == 30
    assert stats['sum'] == 60

  def test_gauge_missing_in_some_cycles_keeps_own_count(self):
    at = datetime(2026, 10, 19, 12, 0, 0)
    bucket = fold_snapshot(None, snapshot(at, connections=1, memory=100))
    bucket = fold_snapshot(bucket, snapshot(at, connections=1))

    assert bucket['count'] == 2
    assert bucket['gauges']['soketi_nodejs_heap_size_used_bytes']['avg'] == 100

  def test_record_snapshot_sums_deltas(self, buckets):
    at = datetime(2026, 10, 19, 12, 5, 0)
    buckets.record_snapshot(snapshot(at, connections=5, messages_delta=7, received=100, sent=50))
    buckets.record_snapshot(snapshot(at + timedelta(seconds=10), connections=15, messages_delta=3))

    point = hour_point(buckets.get_hour_bucket(at), datetime(2026, 10, 19, 12))
    assert point['samples'] == 2
    assert point['avg_connections'] == 10
    assert point['peak_connections'] == 15
    assert point['total_messages'] == 10
    assert point['total_bytes'] == 150
    assert point['time_label'] == '12:00'

  def test_snapshots_in_different_hours_use_different_buckets(self, buckets):
    buckets.record_snapshot(snapshot(datetime(2026, 10, 19, 12, 59, 59), connections=1))
    buckets.record_snapshot(snapshot(datetime(2026, 10, 19, 13, 0, 0), connections=2))

    assert buckets.get_hour_bucket(datetime(2026, 10, 19, 12))['count'] == 1
    assert buckets.get_hour_bucket(datetime(2026, 10, 19, 13))['count'] == 1

  def test_connection_stats_of_empty_hour(self, buckets):
    stats = buckets.connection_stats(datetime(2026, 10, 19, 3))

    assert stats == {'avg_connections': 0.0, 'peak_connections': 0, 'samples': 0}


class TestMinuteBucket:
  """Minute buckets are overwritten within the same minute."""

  def test_last_write_in_minute_wins(self, buckets):
    at = datetime(2026, 10, 19, 12, 5, 10)
    buckets.record_snapshot(snapshot(at, connections=3))
    buckets.record_snapshot(snapshot(at + timedelta(seconds=20), connections=9, messages_total=44))

    point = buckets.get_minute_bucket(at)
    assert point['connections'] == 9
    assert point['messages_sent'] == 44
    assert point['time_label'] == '12:05'

  def test_minute_bucket_expires(self, monotonic):
    from relay_metrics.lib.kv_store import InMemoryKeyValueStore

    buckets = TimeBucketStore(InMemoryKeyValueStore(time_fn=monotonic), minute_ttl_seconds=7200)
    at = datetime(2026, 10, 19, 12, 5, 0)
    buckets.record_snapshot(snapshot(at, connections=3))

    monotonic.state['now'] += 7201

    assert buckets.get_minute_bucket(at) is None


class TestSeries:
  """Zero-filled, oldest-first chart series."""

  def test_minute_series_has_60_points_ending_now(self, buckets):
    now = datetime(2026, 10, 19, 12, 30, 45)
    buckets.record_snapshot(snapshot(datetime(2026, 10, 19, 12, 30, 5), connections=8))

    series = buckets.minute_series(now)

    assert len(series) == 60
    assert series[-1]['connections'] == 8
    assert series[0]['connections'] == 0
    assert series[0]['timestamp'] == epoch_seconds(datetime(2026, 10, 19, 11, 31))
    timestamps = [p['timestamp'] for p in series]
    assert timestamps == sorted(timestamps)

  def test_hour_series_length_and_fill(self, buckets):
    now = datetime(2026, 10, 19, 12, 30)
    buckets.record_snapshot(snapshot(datetime(2026, 10, 19, 10, 15), connections=4))

    series = buckets.hour_series(now, hours=6)

    assert len(series) == 6
    assert [p['time_label'] for p in series] == ['07:00', '08:00', '09:00', '10:00', '11:00', '12:00']
    assert series[3]['peak_connections'] == 4
    assert series[4]['samples'] == 0
