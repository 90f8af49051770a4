"""Models package for database entities and Pydantic models."""

from relay_metrics.models.samples import CounterReading, MetricKind, ProcessedSnapshot, RawSample
from relay_metrics.models.upload_metric import UploadMetric
from relay_metrics.models.upload_metric_hourly import UploadMetricHourly

__all__ = [
    'CounterReading',
    'MetricKind',
    'ProcessedSnapshot',
    'RawSample',
    'UploadMetric',
    'UploadMetricHourly',
]
