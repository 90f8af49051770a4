"""Real-time per-app metrics fed by the messaging server's webhooks.

Every key lives under ``metrics:realtime:app:{app_id}``:

    :channels_occupied              gauge, never below 0
    :total_members                  gauge, never below 0
    :bytes_transferred              running byte tally of client event payloads
    :client_events                  {client event name: count}
    :subscription_counts            {channel: latest subscription count}
    :events:{kind}:minute:{minute}  event count per minute
    :events:{kind}:hour:{hour}      event count per hour

The state keys expire a few minutes after the last webhook so an app that
stops reporting drops off the dashboard; the event series keep an hour of
minutes and a day of hours.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from relay_metrics.lib.clock import Clock, epoch_seconds, hour_key, minute_key, start_of_hour, start_of_minute, utc_now
from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.kv_store import KeyValueStore
from relay_metrics.lib.metrics import record_webhook_event
from relay_metrics.models.webhook_events import WebhookEvent, WebhookPayload

logger = logging.getLogger(__name__)

# webhook event name -> (gauge, step, event series)
GAUGE_EVENTS = {
    'channel_occupied': ('channels_occupied', 1, 'connections'),
    'channel_vacated': ('channels_occupied', -1, 'disconnections'),
    'member_added': ('total_members', 1, 'member_joins'),
    'member_removed': ('total_members', -1, 'member_leaves'),
}
EVENT_KINDS = ['connections', 'disconnections', 'member_joins', 'member_leaves']


def app_prefix(app_id: str) -> str:
    return f'metrics:realtime:app:{app_id}'


def payload_size(data: Any) -> int:
    """Byte length of the compact JSON encoding of a client event's data."""
    return len(json.dumps('' if data is None else data, separators=(',', ':')).encode('utf-8'))


class WebhookMetricsRecorder:
    """Applies webhook batches to the per-app real-time metrics.

    Args:
        store: Shared key-value store
        settings: Pipeline settings (TTLs)
        clock: Source of "now" for reads (naive UTC)
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[PipelineSettings] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    def process(self, app_id: str, payload: WebhookPayload) -> Dict[str, int]:
        """Apply every event of one batch.

        Returns:
            {'processed': n, 'ignored': m}; ignored events carry an untracked name
        """
        occurred_at = payload.occurred_at
        processed = 0
        for event in payload.events:
            if self._apply(app_id, event, occurred_at):
                processed += 1
                record_webhook_event(event.name)
            else:
                logger.debug(f'Ignoring untracked webhook event {event.name!r} for app {app_id}')

        logger.info(
            f'Processed webhook metrics for app {app_id}: {processed} of {len(payload.events)} events',
            extra={'app_id': app_id, 'event_count': len(payload.events), 'timestamp': occurred_at.isoformat()},
        )
        return {'processed': processed, 'ignored': len(payload.events) - processed}

    def _apply(self, app_id: str, event: WebhookEvent, occurred_at: datetime) -> bool:
        prefix = app_prefix(app_id)
        ttl = self.settings.webhook_state_ttl_seconds

        if event.name in GAUGE_EVENTS:
            gauge, step, kind = GAUGE_EVENTS[event.name]
            self.store.update(f'{prefix}:{gauge}', lambda current: max(0, int(current or 0) + step), ttl)
            self._record_event(prefix, kind, occurred_at)
            return True

        if event.name == 'client_event':
            name = event.event or 'unknown'
            self.store.increment(f'{prefix}:bytes_transferred', payload_size(event.data), ttl)
            self.store.update(f'{prefix}:client_events', lambda counts: _bump(counts, name), ttl)
            return True

        if event.name == 'subscription_count':
            channel, count = event.channel, event.subscription_count
            self.store.update(
                f'{prefix}:subscription_counts', lambda counts: {**(counts or {}), channel: count}, ttl
            )
            return True

        return False

    def _record_event(self, prefix: str, kind: str, occurred_at: datetime) -> None:
        self.store.increment(
            f'{prefix}:events:{kind}:minute:{minute_key(occurred_at)}',
            ttl_seconds=self.settings.webhook_minute_series_ttl_seconds,
        )
        self.store.increment(
            f'{prefix}:events:{kind}:hour:{hour_key(occurred_at)}',
            ttl_seconds=self.settings.webhook_hour_series_ttl_seconds,
        )

    def get_app_metrics(self, app_id: str) -> Dict[str, Any]:
        """Current real-time state for one app, with this minute's and hour's event counts."""
        prefix = app_prefix(app_id)
        now = self.clock()
        return {
            'app_id': app_id,
            'channels_occupied': int(self.store.get(f'{prefix}:channels_occupied', 0)),
            'total_members': int(self.store.get(f'{prefix}:total_members', 0)),
            'bytes_transferred': int(self.store.get(f'{prefix}:bytes_transferred', 0)),
            'client_events': self.store.get(f'{prefix}:client_events') or {},
            'subscription_counts': self.store.get(f'{prefix}:subscription_counts') or {},
            'events': {
                kind: {
                    'this_minute': int(self.store.get(f'{prefix}:events:{kind}:minute:{minute_key(now)}', 0)),
                    'this_hour': int(self.store.get(f'{prefix}:events:{kind}:hour:{hour_key(now)}', 0)),
                }
                for kind in EVENT_KINDS
            },
            'checked_at': now.isoformat(),
        }

    def get_event_series(self, app_id: str, granularity: str = 'minute') -> List[Dict[str, Any]]:
        """Zero-filled event counts, oldest first: the last 60 minutes or the last 24 hours."""
        prefix = app_prefix(app_id)
        now = self.clock()
        if granularity == 'minute':
            starts = [start_of_minute(now) - timedelta(minutes=i) for i in range(59, -1, -1)]
            key_fn, label_format = minute_key, '%H:%M'
        else:
            starts = [start_of_hour(now) - timedelta(hours=i) for i in range(23, -1, -1)]
            key_fn, label_format = hour_key, '%H:00'

        series = []
        for start in starts:
            point: Dict[str, Any] = {
                kind: int(self.store.get(f'{prefix}:events:{kind}:{granularity}:{key_fn(start)}', 0))
                for kind in EVENT_KINDS
            }
            point['timestamp'] = epoch_seconds(start)
            point['time_label'] = start.strftime(label_format)
            series.append(point)
        return series


def _bump(counts: Optional[Dict[str, int]], name: str) -> Dict[str, int]:
    counts = counts or {}
    counts[name] = counts.get(name, 0) + 1
    return counts
