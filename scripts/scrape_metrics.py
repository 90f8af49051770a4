"""Soketi metrics scrape job script.

Runs one scrape cycle (fetch /metrics and /usage, compute counter deltas,
update the time buckets and the enhanced cache entry). With --loop it keeps
running cycles every SOKETI_SCRAPE_INTERVAL seconds until interrupted.

Entry point: main() function (configured in pyproject.toml console_scripts)

Exit codes:
    0: Cycle completed, skipped (another cycle holds the lock) or scraping disabled
    1: The metrics source could not be scraped
    2: Any other failure (bad payload, lost generation race, configuration)
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.errors import CycleInProgressError, ScrapeError
from relay_metrics.lib.kv_store import create_kv_store
from relay_metrics.services.pipeline import CycleResult, ScrapePipeline

# Configure logging
logging.basicConfig(
  level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_pipeline(settings: PipelineSettings) -> ScrapePipeline:
  store = create_kv_store(settings.cache_backend, settings.redis_url, f'{settings.cache_prefix}:')
  return ScrapePipeline(store, settings)


async def run_once(pipeline: ScrapePipeline) -> Optional[CycleResult]:
  """Run a single cycle; None when another cycle is already running."""
  try:
    return await pipeline.run_cycle()
  except CycleInProgressError:
    logger.info('Another scrape cycle is running, skipping')
    return None


async def run_forever(pipeline: ScrapePipeline, interval_seconds: float) -> None:
  """Run cycles back to back, sleeping `interval_seconds` between starts.

  Failed cycles are logged and the loop continues with the next tick.
  """
  loop = asyncio.get_running_loop()
  while True:
    started = loop.time()
    try:
      await run_once(pipeline)
    except ScrapeError as e:
      logger.warning(f'Scrape failed, retrying next interval: {e}')
    except Exception as e:
      logger.error(f'Scrape cycle failed: {e}', exc_info=True)
    await asyncio.sleep(max(0.0, interval_seconds - (loop.time() - started)))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description='Scrape Soketi metrics into the cache')
  parser.add_argument(
    '--loop', action='store_true', help='Keep scraping every SOKETI_SCRAPE_INTERVAL seconds'
  )
  return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
  """Main entry point for the scrape job."""
  args = parse_args(argv)

  try:
    settings = get_settings()
    if not settings.scraping_enabled:
      logger.info('Soketi metrics scraping is disabled (SOKETI_SCRAPING_ENABLED=false)')
      sys.exit(0)

    pipeline = build_pipeline(settings)

    if args.loop:
      logger.info(
        f'Scraping {settings.source_base_url} every {settings.scrape_interval_seconds}s'
      )
      try:
        asyncio.run(run_forever(pipeline, settings.scrape_interval_seconds))
      except KeyboardInterrupt:
        logger.info('Scrape loop stopped')
      sys.exit(0)

    result = asyncio.run(run_once(pipeline))
    if result is not None:
      logger.info(
        f'Scrape completed successfully: generation {result.generation}, '
        f'{result.samples_parsed} samples, '
        f'{result.snapshot.current_connections:g} connections'
      )
    sys.exit(0)

  except ScrapeError as e:
    logger.error(f'Failed to scrape Soketi metrics from {e.url}: {e}')
    sys.exit(1)

  except SystemExit:
    raise
  except Exception as e:
    logger.error(f'Fatal error in scrape job: {e}', exc_info=True)
    sys.exit(2)


if __name__ == '__main__':
  main()
