"""Webhook ingestion for real-time per-app metrics.

The messaging server posts batches of channel, presence and client events
with the app they belong to in the `X-App-Id` header. Signature checking is
left to the proxy in front of this service.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.kv_store import KeyValueStore, get_kv_store
from relay_metrics.models.webhook_events import WebhookBatchResponse, WebhookPayload
from relay_metrics.services.webhook_metrics import WebhookMetricsRecorder

logger = logging.getLogger(__name__)

router = APIRouter(tags=['Webhooks'])


def get_webhook_recorder(
  store: KeyValueStore = Depends(get_kv_store),
  settings: PipelineSettings = Depends(get_settings),
) -> WebhookMetricsRecorder:
  return WebhookMetricsRecorder(store, settings)


@router.post('/api/v1/webhooks/metrics', response_model=WebhookBatchResponse)
async def receive_metrics_webhook(
  payload: WebhookPayload,
  app_id: str = Header(..., alias='X-App-Id', min_length=1, max_length=100),
  recorder: WebhookMetricsRecorder = Depends(get_webhook_recorder),
):
  """Apply a webhook batch to the app's real-time metrics.

  Args:
      payload: {time_ms, events: [{name, channel, event, data, subscription_count}]}
      app_id: Application the events belong to
      recorder: Webhook metrics recorder

  Returns:
      How many events were applied and how many had an untracked name
  """
  counts = recorder.process(app_id, payload)
  return WebhookBatchResponse(app_id=app_id, **counts)


@router.get('/api/v1/metrics/realtime/{app_id}')
async def get_realtime_app_metrics(
  app_id: str,
  granularity: Optional[str] = Query(None, pattern='^(minute|hour)$'),
  recorder: WebhookMetricsRecorder = Depends(get_webhook_recorder),
):
  """Get an app's webhook-fed metrics, plus an event series when `granularity` is given."""
  metrics = recorder.get_app_metrics(app_id)
  if granularity is not None:
    metrics['series'] = recorder.get_event_series(app_id, granularity)
    metrics['granularity'] = granularity
  return metrics
