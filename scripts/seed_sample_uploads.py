"""Sample Data Setup Script for the upload metrics dashboard.

Replays synthetic upload lifecycles (prepared -> completed | failed) through
the upload tracker so local dashboards and the hourly rollup have data:

- seed: Create sample uploads spread over the last N hours, then roll up each hour
- cleanup: Remove sample uploads (destructive!)

Sample upload IDs start with "sample-" so cleanup never touches real rows.
"""

import random
import sys
from datetime import datetime, timedelta

import click
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import OperationalError

from relay_metrics.lib.clock import start_of_hour, utc_now
from relay_metrics.lib.config import get_settings
from relay_metrics.lib.database import get_session_factory
from relay_metrics.lib.kv_store import create_kv_store
from relay_metrics.models.upload_metric import UploadMetric
from relay_metrics.services.hourly_aggregator import HourlyAggregator
from relay_metrics.services.upload_tracker import UploadLifecycleTracker

SAMPLE_PREFIX = 'sample-'
FAILURE_STAGES = ['chunk_upload', 'finalize', 'network', 'validation']

console = Console()


class _ReplayClock:
  """Clock that the seeder moves by hand while replaying lifecycles."""

  def __init__(self, now: datetime):
    self.now = now

  def __call__(self) -> datetime:
    return self.now


def _replay_upload(tracker: UploadLifecycleTracker, clock: _ReplayClock, rng: random.Random,
                   index: int, prepared_at: datetime, failure_rate: float) -> str:
  upload_id = f'{SAMPLE_PREFIX}{prepared_at:%Y%m%d%H%M}-{index}'
  user_id = rng.randint(1, 50)
  file_size = rng.randint(1, 1500) * 1024 * 1024
  chunk_size = 5 * 1024 * 1024
  chunk_count = max(1, file_size // chunk_size)
  duration = rng.uniform(3, 900)

  clock.now = prepared_at
  tracker.record_prepared(upload_id, user_id, {
    'fileSize': file_size,
    'fileName': f'sample_video_{index}.mp4',
    'chunkCount': chunk_count,
    'chunkSize': chunk_size,
    'estimatedDuration': int(duration),
  })

  clock.now = prepared_at + timedelta(seconds=duration)
  if rng.random() < failure_rate:
    completed_chunks = rng.randint(0, chunk_count)
    tracker.record_failed(upload_id, {
      'message': 'Sample upload failure',
      'code': 'SAMPLE_ERROR',
      'stage': rng.choice(FAILURE_STAGES),
      'retryable': True,
      'percentageCompleted': round(completed_chunks / chunk_count * 100, 2),
      'chunksCompleted': completed_chunks,
      'bytesUploaded': completed_chunks * chunk_size,
      'attemptNumber': rng.randint(1, 3),
    })
    return 'failed'

  tracker.record_completed(upload_id, video_id=10_000 + index, metadata={
    'finalFileSize': file_size,
    'processingTime': rng.randint(200, 5000),
  })
  return 'completed'


@click.group()
def cli():
  """Sample upload data for the metrics dashboard."""
  pass


@cli.command()
@click.option('--hours', default=6, type=int, help='Spread uploads over the last N closed hours')
@click.option('--per-hour', default=20, type=int, help='Uploads per hour')
@click.option('--failure-rate', default=0.15, type=float, help='Share of uploads that fail (0-1)')
@click.option('--seed', 'random_seed', default=None, type=int, help='Random seed for repeatable data')
def seed(hours, per_hour, failure_rate, random_seed):
  """Create sample uploads and their hourly rollups."""
  settings = get_settings()
  if not settings.database_url:
    console.print('[red]Error: DATABASE_URL not set[/red]')
    console.print('[yellow]Set DATABASE_URL in .env.local and run alembic upgrade head first[/yellow]')
    sys.exit(1)

  rng = random.Random(random_seed)
  store = create_kv_store(settings.cache_backend, settings.redis_url, f'{settings.cache_prefix}:')
  first_hour = start_of_hour(utc_now()) - timedelta(hours=hours)

  console.print(f'\n[bold]Seeding {hours * per_hour} sample uploads...[/bold]')
  session = get_session_factory()()
  try:
    clock = _ReplayClock(first_hour)
    tracker = UploadLifecycleTracker(session, store, settings, clock=clock)
    aggregator = HourlyAggregator(session)

    table = Table(title='Sample uploads')
    table.add_column('Hour (UTC)')
    table.add_column('Completed', justify='right')
    table.add_column('Failed', justify='right')
    table.add_column('Completion rate', justify='right')

    for h in range(hours):
      hour_start = first_hour + timedelta(hours=h)
      for i in range(per_hour):
        prepared_at = hour_start + timedelta(seconds=rng.randint(0, 3599))
        _replay_upload(tracker, clock, rng, h * per_hour + i, prepared_at, failure_rate)

      rollup = aggregator.aggregate_hour(hour_start)
      table.add_row(
        hour_start.strftime('%Y-%m-%d %H:00'),
        str(rollup['completed_uploads']),
        str(rollup['failed_uploads']),
        f'{rollup["completion_rate"]}%',
      )

    console.print(table)
    console.print('\n[green]✓ Sample upload data created successfully![/green]')

  except OperationalError as e:
    console.print(f'[red]Database connection error: {e}[/red]')
    console.print('[yellow]Check DATABASE_URL and run alembic upgrade head[/yellow]')
    sys.exit(1)
  finally:
    session.close()


@cli.command()
@click.option('--confirm', is_flag=True, help='Skip confirmation prompt')
def cleanup(confirm):
  """Remove sample uploads (destructive operation!)."""
  if not confirm:
    console.print('[yellow]This will DELETE sample uploads. Use --confirm flag to proceed.[/yellow]')
    sys.exit(0)

  session = get_session_factory()()
  try:
    deleted = (
      session.query(UploadMetric)
      .filter(UploadMetric.upload_id.like(f'{SAMPLE_PREFIX}%'))
      .delete(synchronize_session=False)
    )
    session.commit()
    console.print(f'[green]✓ Deleted {deleted} sample uploads[/green]')
    console.print('[dim]Re-run the hourly aggregation to refresh affected rollups.[/dim]')
  except OperationalError as e:
    session.rollback()
    console.print(f'[red]Database connection error: {e}[/red]')
    sys.exit(1)
  finally:
    session.close()


if __name__ == '__main__':
  cli()
