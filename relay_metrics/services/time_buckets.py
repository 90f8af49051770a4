"""Minute and hour time buckets for dashboard charts.

Minute buckets hold one tuple per minute, overwritten by every cycle in that
minute. Hour buckets are running aggregates (count, per-gauge sum/avg/peak,
per-counter delta sums) updated through the store's compare-and-swap loop.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from relay_metrics.lib.clock import epoch_seconds, hour_key, minute_key, start_of_hour, start_of_minute
from relay_metrics.lib.kv_store import KeyValueStore
from relay_metrics.models.samples import ProcessedSnapshot

logger = logging.getLogger(__name__)

MINUTE_PREFIX = 'timeseries:minute:'
HOUR_PREFIX = 'timeseries:hour:'

CONNECTIONS = 'soketi_connected'
MEMORY = 'soketi_nodejs_heap_size_used_bytes'
MESSAGES_SENT = 'soketi_ws_messages_sent_total'
BYTES_RECEIVED = 'soketi_socket_received_bytes'
BYTES_SENT = 'soketi_socket_transmitted_bytes'


def empty_hour_bucket() -> Dict[str, Any]:
    return {'count': 0, 'last_updated': None, 'gauges': {}, 'deltas': {}}


def fold_snapshot(bucket: Optional[Dict[str, Any]], snapshot: ProcessedSnapshot) -> Dict[str, Any]:
    """Fold one snapshot into an hour bucket (pure function, used inside a CAS loop)."""
    bucket = bucket or empty_hour_bucket()
    n = bucket['count']

    for name, value in snapshot.gauges.items():
        stats = bucket['gauges'].get(name) or {'count': 0, 'sum': 0.0, 'avg': 0.0, 'peak': value}
        k = stats['count']
        stats['sum'] += value
        stats['avg'] = (stats['avg'] * k + value) / (k + 1)
        stats['peak'] = max(stats['peak'], value)
        stats['count'] = k + 1
        bucket['gauges'][name] = stats

    for name, reading in snapshot.counters.items():
        bucket['deltas'][name] = bucket['deltas'].get(name, 0.0) + reading.delta_since_last

    bucket['count'] = n + 1
    bucket['last_updated'] = epoch_seconds(snapshot.captured_at)
    return bucket


def minute_point(snapshot: ProcessedSnapshot) -> Dict[str, Any]:
    return {
        'connections': snapshot.gauge(CONNECTIONS),
        'messages_sent': snapshot.counter_total(MESSAGES_SENT),
        'bytes_transferred': snapshot.bytes_received + snapshot.bytes_sent,
        'memory_usage': snapshot.gauge(MEMORY),
        'timestamp': epoch_seconds(snapshot.captured_at),
        'time_label': snapshot.captured_at.strftime('%H:%M'),
    }


def hour_point(bucket: Optional[Dict[str, Any]], hour_start: datetime) -> Dict[str, Any]:
    """Flatten an hour bucket into a chart point; an absent bucket yields zeros."""
    bucket = bucket or empty_hour_bucket()
    gauges = bucket['gauges']
    deltas = bucket['deltas']
    connections = gauges.get(CONNECTIONS, {})
    memory = gauges.get(MEMORY, {})
    return {
        'avg_connections': round(connections.get('avg', 0.0), 2),
        'peak_connections': connections.get('peak', 0),
        'total_messages': deltas.get(MESSAGES_SENT, 0),
        'total_bytes': deltas.get(BYTES_RECEIVED, 0) + deltas.get(BYTES_SENT, 0),
        'avg_memory': round(memory.get('avg', 0.0), 2),
        'samples': bucket['count'],
        'timestamp': epoch_seconds(hour_start),
        'time_label': hour_start.strftime('%H:00'),
    }


class TimeBucketStore:
    """Reads and writes the minute/hour buckets in a KeyValueStore."""

    def __init__(self, store: KeyValueStore, minute_ttl_seconds: int = 7200, hour_ttl_seconds: int = 86400):
        self.store = store
        self.minute_ttl_seconds = minute_ttl_seconds
        self.hour_ttl_seconds = hour_ttl_seconds

    def record_snapshot(self, snapshot: ProcessedSnapshot) -> Dict[str, Any]:
        """Overwrite the minute bucket and fold the snapshot into the hour bucket.

        Returns:
            The hour bucket as written
        """
        moment = snapshot.captured_at
        self.store.put(MINUTE_PREFIX + minute_key(moment), minute_point(snapshot), self.minute_ttl_seconds)
        bucket = self.store.update(
            HOUR_PREFIX + hour_key(moment),
            lambda current: fold_snapshot(current, snapshot),
            self.hour_ttl_seconds,
        )
        logger.debug(f'Hour bucket {hour_key(moment)} now has {bucket["count"]} samples')
        return bucket

    def get_minute_bucket(self, moment: datetime) -> Optional[Dict[str, Any]]:
        return self.store.get(MINUTE_PREFIX + minute_key(moment))

    def get_hour_bucket(self, moment: datetime) -> Optional[Dict[str, Any]]:
        return self.store.get(HOUR_PREFIX + hour_key(moment))

    def minute_series(self, now: datetime, minutes: int = 60) -> List[Dict[str, Any]]:
        """Zero-filled, oldest-first minute points ending at the current minute."""
        end = start_of_minute(now)
        series = []
        for offset in range(minutes - 1, -1, -1):
            moment = end - timedelta(minutes=offset)
            point = self.get_minute_bucket(moment)
            if point is None:
                point = {
                    'connections': 0,
                    'messages_sent': 0,
                    'bytes_transferred': 0,
                    'memory_usage': 0,
                    'timestamp': epoch_seconds(moment),
                    'time_label': moment.strftime('%H:%M'),
                }
            series.append(point)
        return series

    def hour_series(self, now: datetime, hours: int = 24) -> List[Dict[str, Any]]:
        """Zero-filled, oldest-first hour points ending at the current hour."""
        end = start_of_hour(now)
        series = []
        for offset in range(hours - 1, -1, -1):
            hour_start = end - timedelta(hours=offset)
            series.append(hour_point(self.get_hour_bucket(hour_start), hour_start))
        return series

    def connection_stats(self, hour_start: datetime) -> Dict[str, Any]:
        """Connection statistics of one hour for the hourly rollup report."""
        point = hour_point(self.get_hour_bucket(hour_start), hour_start)
        return {
            'avg_connections': point['avg_connections'],
            'peak_connections': point['peak_connections'],
            'samples': point['samples'],
        }
