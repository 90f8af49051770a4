"""Upload lifecycle event ingestion.

Clients report prepared / completed / failed events for chunked uploads.
Invalid payloads are rejected with 422 before any state is touched; an event
that would reopen a finished upload is rejected with 409.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.database import get_optional_db_session
from relay_metrics.lib.kv_store import KeyValueStore, get_kv_store
from relay_metrics.models.upload_events import (
  CompletedEvent,
  FailedEvent,
  PreparedEvent,
  UploadEventResponse,
)
from relay_metrics.services.upload_tracker import RecordedEvent, UploadLifecycleTracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/v1/upload-events', tags=['Upload Events'])


def get_upload_tracker(
  db: Optional[Session] = Depends(get_optional_db_session),
  store: KeyValueStore = Depends(get_kv_store),
  settings: PipelineSettings = Depends(get_settings),
) -> UploadLifecycleTracker:
  """Build a tracker for the request; 503 when no database is configured."""
  if db is None:
    raise HTTPException(
      status_code=503, detail='Upload tracking unavailable: database not configured'
    )
  return UploadLifecycleTracker(db, store, settings)


def _response(result: RecordedEvent) -> UploadEventResponse:
  return UploadEventResponse(
    upload_id=result.upload_id,
    event_type=result.event_type,
    status=result.status,
    correlated=result.correlated,
    upload_duration=result.upload_duration,
    duration_bucket=result.duration_bucket,
  )


@router.post('/prepared', status_code=201, response_model=UploadEventResponse)
async def upload_prepared(
  event: PreparedEvent,
  tracker: UploadLifecycleTracker = Depends(get_upload_tracker),
):
  """Record that upload URLs were prepared.

  Args:
      event: {upload_id, user_id, metadata: {fileSize, fileName, chunkCount, chunkSize, estimatedDuration}}
      tracker: Upload lifecycle tracker

  Returns:
      The upload's state after the event
  """
  result = tracker.record_prepared(
    event.upload_id, event.user_id, event.metadata.model_dump(by_alias=True)
  )
  return _response(result)


@router.post('/completed', response_model=UploadEventResponse)
async def upload_completed(
  event: CompletedEvent,
  tracker: UploadLifecycleTracker = Depends(get_upload_tracker),
):
  """Record a completed upload (synthesizes a row if the prepared event was lost)."""
  result = tracker.record_completed(
    event.upload_id,
    event.video_id,
    user_id=event.user_id,
    metadata=event.metadata.model_dump(by_alias=True),
  )
  return _response(result)


@router.post('/failed', response_model=UploadEventResponse)
async def upload_failed(
  event: FailedEvent,
  tracker: UploadLifecycleTracker = Depends(get_upload_tracker),
):
  """Record a failed upload with its error details."""
  result = tracker.record_failed(
    event.upload_id,
    event.failure_data.model_dump(by_alias=True),
    user_id=event.user_id,
  )
  return _response(result)
