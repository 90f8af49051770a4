"""Correlation IDs for requests and scrape cycles.

Every HTTP request and every batch run (scrape cycle, hourly aggregation)
gets an identifier held in a context variable so that log lines emitted
anywhere below it can be tied back together.
"""

import contextvars
from uuid import uuid4

_DEFAULT_ID = 'no-correlation-id'

correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
  'correlation_id', default=_DEFAULT_ID
)


def get_correlation_id() -> str:
  """Return the current correlation ID, or the default placeholder."""
  return correlation_id.get()


def set_correlation_id(value: str) -> None:
  """Bind a correlation ID (e.g. from the X-Correlation-ID header) to the current context."""
  correlation_id.set(value)


def new_cycle_id(prefix: str = 'cycle') -> str:
  """Generate an ID for a batch run and bind it to the current context.

  Args:
      prefix: Run kind, e.g. "cycle" for scrapes or "rollup" for aggregation

  Returns:
      The generated ID, e.g. "cycle-3f2a..."
  """
  value = f'{prefix}-{uuid4().hex[:12]}'
  set_correlation_id(value)
  return value


def reset_correlation_id() -> None:
  correlation_id.set(_DEFAULT_ID)
