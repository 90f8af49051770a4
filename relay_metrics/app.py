"""FastAPI application for the Soketi metrics pipeline."""

import logging
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from relay_metrics.lib.config import get_settings
from relay_metrics.lib.database import check_connection, is_database_configured
from relay_metrics.lib.distributed_tracing import set_correlation_id
from relay_metrics.lib.errors import (
  UploadEventValidationError,
  UploadPersistenceError,
  UploadStateError,
)
from relay_metrics.lib.metrics import record_request_duration
from relay_metrics.lib.structured_logger import log_request
from relay_metrics.models.upload_events import validation_errors
from relay_metrics.routers import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
  """Manage application lifespan."""
  settings = get_settings()
  logger.info(
    f'Metrics API starting (source {settings.source_base_url}, cache backend {settings.cache_backend})'
  )
  yield


app = FastAPI(
  title='Soketi Metrics API',
  description='Scrapes Soketi Prometheus metrics, tracks upload lifecycles and serves dashboard aggregates',
  version='0.1.0',
  lifespan=lifespan,
)

app.add_middleware(
  CORSMiddleware,
  allow_origins=[
    'http://localhost:5173',
    'http://127.0.0.1:5173',
    'http://localhost:3000',
    'http://127.0.0.1:3000',
  ],
  allow_credentials=True,
  allow_methods=['*'],
  allow_headers=['*'],
)


@app.middleware('http')
async def add_correlation_id(request: Request, call_next):
  """Inject correlation ID into request.

  - Extracts X-Correlation-ID header or generates new UUID
  - Sets correlation ID in context for logging
  - Adds X-Correlation-ID to response headers
  - Logs request with performance metrics
  """
  correlation_id = request.headers.get('X-Correlation-ID', str(uuid4()))
  set_correlation_id(correlation_id)
  request.state.correlation_id = correlation_id

  start_time = time.time()
  response = await call_next(request)
  duration_seconds = time.time() - start_time

  response.headers['X-Correlation-ID'] = correlation_id

  # Skip health and metrics endpoints to reduce noise
  if request.url.path not in ['/health', '/metrics']:
    record_request_duration(
      endpoint=request.url.path,
      method=request.method,
      status=response.status_code,
      duration_seconds=duration_seconds,
    )
    log_request(
      endpoint=request.url.path,
      method=request.method,
      status_code=response.status_code,
      duration_ms=duration_seconds * 1000,
    )

  return response


@app.get('/health')
async def health_root():
  """Health check endpoint (for load balancers).

  Reports the database as "not_configured" when DATABASE_URL is unset; the
  cache-backed endpoints keep working in that mode.
  """
  if not is_database_configured():
    database = 'not_configured'
  else:
    database = 'connected' if check_connection() else 'unavailable'
  return {'status': 'healthy', 'database': database}


@app.get('/metrics')
async def metrics_root():
  """Prometheus metrics endpoint for the pipeline itself (cycles, retries, resets, upload events)."""
  return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================


@app.exception_handler(RequestValidationError)
async def custom_validation_exception_handler(request: Request, exc: RequestValidationError):
  """Return 422 with a flat `[{field, message}]` list instead of pydantic's raw errors."""
  if request.url.path.startswith('/api/v1/upload-events'):
    detail = 'Invalid upload event'
  else:
    detail = 'Invalid request'
  return JSONResponse(status_code=422, content={'detail': detail, 'errors': validation_errors(exc)})


@app.exception_handler(UploadEventValidationError)
async def upload_event_validation_handler(request: Request, exc: UploadEventValidationError):
  return JSONResponse(status_code=422, content={'detail': 'Invalid upload event', 'errors': exc.errors})


@app.exception_handler(UploadStateError)
async def upload_state_handler(request: Request, exc: UploadStateError):
  """An event that would move a finished upload back to another state."""
  return JSONResponse(
    status_code=409,
    content={
      'detail': str(exc),
      'upload_id': exc.upload_id,
      'current_state': exc.current_state,
    },
  )


@app.exception_handler(UploadPersistenceError)
async def upload_persistence_handler(request: Request, exc: UploadPersistenceError):
  logger.error(f'Upload event not persisted for {exc.upload_id}: {exc}')
  return JSONResponse(
    status_code=503,
    content={'detail': 'Upload event could not be stored', 'upload_id': exc.upload_id},
  )


app.include_router(router)
