"""Hourly upload metrics aggregation job script.

Rolls up the upload_metrics rows of the last closed hour (or an explicit
--hour) into one upload_metrics_hourly row, then deletes upload_metrics rows
older than the retention window.

Designed to run from a scheduler a few minutes past every hour.
Entry point: main() function (configured in pyproject.toml console_scripts)

Exit codes:
    0: Success
    1: Fatal error (database unreachable, bad arguments)
    2: Aggregation failed (transaction rolled back)
"""

import argparse
import logging
import sys
from datetime import datetime
from typing import List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from relay_metrics.lib.config import get_settings
from relay_metrics.lib.distributed_tracing import new_cycle_id
from relay_metrics.lib.errors import AggregationError
from relay_metrics.lib.kv_store import create_kv_store
from relay_metrics.services.hourly_aggregator import HourlyAggregator
from relay_metrics.services.time_buckets import TimeBucketStore

# Configure logging
logging.basicConfig(
  level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description='Aggregate upload metrics into hourly rollups')
  parser.add_argument(
    '--hour',
    type=datetime.fromisoformat,
    default=None,
    help='Hour to aggregate (ISO format, UTC). Defaults to the last closed hour.',
  )
  parser.add_argument(
    '--skip-cleanup', action='store_true', help='Do not delete old upload_metrics rows'
  )
  return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
  """Main entry point for the hourly aggregation job."""
  job_id = new_cycle_id('rollup')
  logger.info('=' * 80)
  logger.info(f'Starting hourly upload aggregation job ({job_id})')
  logger.info('=' * 80)

  try:
    args = parse_args(argv)
    settings = get_settings()
    if not settings.database_url:
      logger.error('DATABASE_URL environment variable not set')
      sys.exit(1)

    engine = create_engine(settings.database_url)
    Session = sessionmaker(bind=engine)
    session = Session()

    store = create_kv_store(settings.cache_backend, settings.redis_url, f'{settings.cache_prefix}:')
    time_buckets = TimeBucketStore(
      store,
      minute_ttl_seconds=settings.minute_bucket_ttl_seconds,
      hour_ttl_seconds=settings.hour_bucket_ttl_seconds,
    )

    try:
      aggregator = HourlyAggregator(session, time_buckets=time_buckets)
      result = aggregator.aggregate_hour(args.hour)

      cleanup_count = 0
      if not args.skip_cleanup:
        cleanup_count = aggregator.cleanup_old_upload_metrics(settings.upload_metrics_cleanup_days)

      connections = result.get('connections') or {}
      logger.info(
        f'Aggregation job completed successfully: hour {result["hour"]}, '
        f'{result["total_uploads"]} uploads ({result["completion_rate"]}% completed), '
        f'peak connections {connections.get("peak_connections", 0)}, '
        f'{cleanup_count} old upload records deleted'
      )
      sys.exit(0)

    except AggregationError as e:
      logger.error(f'Aggregation job failed: {e}', exc_info=True)
      session.rollback()
      sys.exit(2)

    finally:
      session.close()

  except SystemExit:
    raise
  except Exception as e:
    logger.error(f'Fatal error in aggregation job: {e}', exc_info=True)
    sys.exit(1)


if __name__ == '__main__':
  main()
