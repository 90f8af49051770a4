"""Exception types raised by the metrics pipeline."""

from typing import Dict, List, Optional


class MetricsPipelineError(Exception):
  """Base class for pipeline errors."""

  pass


class ScrapeError(MetricsPipelineError):
  """Raised when the metrics source cannot be fetched (timeout, transport error, non-2xx)."""

  def __init__(self, message: str, url: str, status_code: Optional[int] = None, attempts: int = 1):
    super().__init__(message)
    self.url = url
    self.status_code = status_code
    self.attempts = attempts


class ExpositionParseError(MetricsPipelineError):
  """Raised when the exposition payload cannot be read at all."""

  pass


class StaleSnapshotError(MetricsPipelineError):
  """Raised when another cycle replaced the previous-totals generation first."""

  def __init__(self, expected_generation: int):
    super().__init__(
      f'Previous totals generation {expected_generation} was replaced by a concurrent cycle'
    )
    self.expected_generation = expected_generation


class CycleInProgressError(MetricsPipelineError):
  """Raised when a scrape cycle is already running."""

  pass


class UploadEventValidationError(MetricsPipelineError):
  """Raised when an upload event is missing required fields or carries invalid values."""

  def __init__(self, errors: List[Dict[str, str]]):
    fields = ', '.join(e['field'] for e in errors)
    super().__init__(f'Invalid upload event: {fields}')
    self.errors = errors


class UploadStateError(MetricsPipelineError):
  """Raised when an event would reopen an upload that already reached a terminal state."""

  def __init__(self, upload_id: str, current_state: str, event_type: str):
    super().__init__(
      f'Upload {upload_id} is already {current_state}; cannot record {event_type}'
    )
    self.upload_id = upload_id
    self.current_state = current_state
    self.event_type = event_type


class UploadPersistenceError(MetricsPipelineError):
  """Raised when a durable upload_metrics write fails."""

  def __init__(self, message: str, upload_id: str):
    super().__init__(message)
    self.upload_id = upload_id


class AggregationError(MetricsPipelineError):
  """Raised when the hourly rollup cannot be computed or written."""

  pass
