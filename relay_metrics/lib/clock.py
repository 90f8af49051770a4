"""Time helpers shared by the trackers and the aggregator.

All datetimes handled by the pipeline are naive UTC, matching the
`timestamp` columns of the durable schema.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

HOUR_KEY_FORMAT = '%Y-%m-%d-%H'
MINUTE_KEY_FORMAT = '%Y-%m-%d-%H-%M'
DAY_KEY_FORMAT = '%Y-%m-%d'


def utc_now() -> datetime:
  return datetime.now(timezone.utc).replace(tzinfo=None)


def hour_key(moment: datetime) -> str:
  return moment.strftime(HOUR_KEY_FORMAT)


def minute_key(moment: datetime) -> str:
  return moment.strftime(MINUTE_KEY_FORMAT)


def day_key(moment: datetime) -> str:
  return moment.strftime(DAY_KEY_FORMAT)


def start_of_hour(moment: datetime) -> datetime:
  return moment.replace(minute=0, second=0, microsecond=0)


def start_of_minute(moment: datetime) -> datetime:
  return moment.replace(second=0, microsecond=0)


def previous_closed_hour(now: datetime) -> datetime:
  """Start of the hour immediately preceding the in-progress hour."""
  return start_of_hour(now) - timedelta(hours=1)


def epoch_seconds(moment: datetime) -> int:
  return int(moment.replace(tzinfo=timezone.utc).timestamp())
