"""Prometheus-compatible self-metrics for the ingestion pipeline.

These describe the pipeline's own health (scrape outcomes, counter resets,
ingested upload and webhook events, rollup runs), not the scraped server's
metrics.
"""

from prometheus_client import Counter, Gauge, Histogram


scrape_cycles_total = Counter(
  'relay_scrape_cycles_total',
  'Scrape cycles by outcome',
  ['outcome']
)

scrape_duration_seconds = Histogram(
  'relay_scrape_duration_seconds',
  'Duration of a complete scrape cycle in seconds',
  buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

scrape_fetch_retries_total = Counter(
  'relay_scrape_fetch_retries_total',
  'Retried fetches against the metrics source',
  ['endpoint']
)

counter_resets_total = Counter(
  'relay_counter_resets_total',
  'Counters observed going backwards between cycles (upstream restart)',
  ['metric']
)

snapshot_generation = Gauge(
  'relay_snapshot_generation',
  'Generation number of the latest processed snapshot'
)

upload_events_total = Counter(
  'relay_upload_events_total',
  'Upload lifecycle events recorded',
  ['event_type', 'correlated']
)

webhook_events_total = Counter(
  'relay_webhook_events_total',
  'Webhook events applied to the real-time per-app metrics',
  ['event']
)

hourly_rollups_total = Counter(
  'relay_hourly_rollups_total',
  'Hourly aggregation runs by outcome',
  ['outcome']
)

request_duration_seconds = Histogram(
  'relay_request_duration_seconds',
  'API request duration in seconds',
  ['endpoint', 'method', 'status'],
  buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0]
)


def record_scrape_cycle(outcome: str, duration_seconds: float = None):
  """Record the outcome of a scrape cycle.

  Args:
      outcome: 'success', 'fetch_failed', 'stale', 'skipped' or 'error'
      duration_seconds: Cycle duration, observed only for completed cycles
  """
  scrape_cycles_total.labels(outcome=outcome).inc()
  if duration_seconds is not None:
    scrape_duration_seconds.observe(duration_seconds)


def record_fetch_retry(endpoint: str):
  scrape_fetch_retries_total.labels(endpoint=endpoint).inc()


def record_counter_reset(metric: str):
  counter_resets_total.labels(metric=metric).inc()


def record_snapshot_generation(generation: int):
  snapshot_generation.set(generation)


def record_upload_event(event_type: str, correlated: bool):
  """Record an ingested upload event.

  Args:
      event_type: 'prepared', 'completed' or 'failed'
      correlated: False when a terminal event arrived without a prepared row
  """
  upload_events_total.labels(
    event_type=event_type,
    correlated='true' if correlated else 'false'
  ).inc()


def record_webhook_event(event: str):
  webhook_events_total.labels(event=event).inc()


def record_hourly_rollup(outcome: str):
  hourly_rollups_total.labels(outcome=outcome).inc()


def record_request_duration(endpoint: str, method: str, status: int, duration_seconds: float):
  request_duration_seconds.labels(
    endpoint=endpoint,
    method=method,
    status=str(status)
  ).observe(duration_seconds)
