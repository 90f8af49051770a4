"""HTTP client for the messaging server's metrics endpoints.

Every request carries a timeout. `/metrics` fetches are retried with
exponential backoff on timeouts, transport errors and 5xx responses; a 4xx
response fails immediately.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from relay_metrics.lib.clock import utc_now
from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.errors import ScrapeError
from relay_metrics.lib.metrics import record_fetch_retry

logger = logging.getLogger(__name__)


def with_scrape_retry(func):
    """Retry a scraper coroutine with exponential backoff.

    Attempts and base delay come from the scraper instance
    (`max_attempts`, `backoff_seconds`); delays are base, 2*base, 4*base...
    Client errors (4xx) are not retried.
    """

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        last_error: Optional[ScrapeError] = None
        for attempt in range(self.max_attempts):
            try:
                return await func(self, *args, **kwargs)
            except ScrapeError as e:
                if e.status_code is not None and e.status_code < 500:
                    e.attempts = attempt + 1
                    raise
                last_error = e
            except httpx.TransportError as e:
                last_error = ScrapeError(f'{type(e).__name__}: {e}', url=str(e.request.url) if _has_request(e) else '')

            if attempt < self.max_attempts - 1:
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(
                    f'{func.__name__} attempt {attempt + 1}/{self.max_attempts} failed: {last_error}; '
                    f'retrying in {delay:.2f}s'
                )
                record_fetch_retry(func.__name__)
                await asyncio.sleep(delay)

        last_error.attempts = self.max_attempts
        raise last_error

    return wrapper


def _has_request(error: httpx.TransportError) -> bool:
    try:
        error.request
    except RuntimeError:
        return False
    return True


class MetricsScraper:
    """Fetches /metrics and /usage from the messaging server.

    Args:
        settings: Source host/ports, timeout and retry policy
        client: Optional shared httpx.AsyncClient (tests pass one built on MockTransport)
    """

    def __init__(self, settings: Optional[PipelineSettings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._client = client
        self.max_attempts = self.settings.scrape_max_attempts
        self.backoff_seconds = self.settings.scrape_backoff_seconds

    @property
    def metrics_url(self) -> str:
        return f'{self.settings.source_base_url}/metrics'

    @property
    def usage_url(self) -> str:
        return f'{self.settings.source_base_url}/usage'

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.settings.scrape_timeout_seconds) as client:
            yield client

    @with_scrape_retry
    async def fetch_exposition(self) -> str:
        """GET /metrics and return the exposition text.

        Raises:
            ScrapeError: After the last failed attempt, or immediately on 4xx
        """
        async with self._http() as client:
            response = await client.get(self.metrics_url, timeout=self.settings.scrape_timeout_seconds)
        if not response.is_success:
            raise ScrapeError(
                f'Metrics endpoint returned HTTP {response.status_code}',
                url=self.metrics_url,
                status_code=response.status_code,
            )
        return response.text

    async def fetch_usage(self) -> Optional[Dict[str, Any]]:
        """GET /usage; any failure (including a non-object body) yields None."""
        try:
            async with self._http() as client:
                response = await client.get(self.usage_url, timeout=self.settings.scrape_timeout_seconds)
            if not response.is_success:
                logger.debug(f'Usage endpoint returned HTTP {response.status_code}')
                return None
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f'Usage endpoint unavailable: {e}')
            return None
        return payload if isinstance(payload, dict) else None

    async def _probe(self, client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            response = await client.get(url, timeout=min(5.0, self.settings.scrape_timeout_seconds))
        except httpx.HTTPError as e:
            return {'healthy': False, 'url': url, 'error': str(e) or type(e).__name__}
        return {
            'healthy': response.is_success,
            'url': url,
            'status_code': response.status_code,
            'response_time_ms': round((time.perf_counter() - started) * 1000, 2),
        }

    async def check_health(self) -> Dict[str, Any]:
        """Probe the WebSocket API port and the metrics port."""
        async with self._http() as client:
            websocket_api, metrics_api = await asyncio.gather(
                self._probe(client, self.settings.websocket_url),
                self._probe(client, self.metrics_url),
            )
        return {
            'overall_healthy': websocket_api['healthy'] and metrics_api['healthy'],
            'websocket_api': websocket_api,
            'metrics_api': metrics_api,
            'checked_at': utc_now().isoformat(),
        }
