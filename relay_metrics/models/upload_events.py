"""Event-ingestion payloads for the upload lifecycle.

Top-level keys are snake_case (`upload_id`, `failure_data`); the nested
metadata objects keep the camelCase keys the uploading client sends
(`fileSize`, `attemptNumber`, ...). Both spellings are accepted on input.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from relay_metrics.lib.errors import UploadEventValidationError


class _ClientPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class PreparedMetadata(_ClientPayload):
    file_size: Optional[int] = Field(None, alias='fileSize', ge=0)
    file_name: Optional[str] = Field(None, alias='fileName', max_length=255)
    chunk_count: Optional[int] = Field(None, alias='chunkCount', ge=0)
    chunk_size: Optional[int] = Field(None, alias='chunkSize', ge=0)
    estimated_duration: Optional[int] = Field(None, alias='estimatedDuration', ge=0)


class CompletedMetadata(_ClientPayload):
    final_file_size: Optional[int] = Field(None, alias='finalFileSize', ge=0)
    processing_time: Optional[int] = Field(None, alias='processingTime', ge=0)
    upload_duration: Optional[float] = Field(None, alias='uploadDuration', ge=0)
    file_size: Optional[int] = Field(None, alias='fileSize', ge=0)
    file_name: Optional[str] = Field(None, alias='fileName', max_length=255)
    chunk_count: Optional[int] = Field(None, alias='chunkCount', ge=0)


class FailureData(_ClientPayload):
    message: str = Field('Upload failed', max_length=255)
    code: str = Field('UPLOAD_ERROR', max_length=100)
    stage: str = Field('unknown', max_length=50)
    retryable: bool = False
    percentage_completed: float = Field(0, alias='percentageCompleted', ge=0, le=100)
    chunks_completed: Optional[int] = Field(None, alias='chunksCompleted', ge=0)
    bytes_uploaded: int = Field(0, alias='bytesUploaded', ge=0)
    attempt_number: int = Field(1, alias='attemptNumber', ge=1)
    duration: Optional[float] = Field(None, ge=0)
    file_size: Optional[int] = Field(None, alias='fileSize', ge=0)
    file_name: Optional[str] = Field(None, alias='fileName', max_length=255)
    chunk_count: Optional[int] = Field(None, alias='chunkCount', ge=0)


class _UploadEvent(_ClientPayload):
    upload_id: str = Field(..., min_length=1, max_length=255)
    user_id: Optional[int] = Field(None, ge=0)

    @field_validator('upload_id')
    @classmethod
    def validate_upload_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('upload_id must not be blank')
        return v.strip()


class PreparedEvent(_UploadEvent):
    user_id: int = Field(..., ge=0)
    metadata: PreparedMetadata = Field(default_factory=PreparedMetadata)


class CompletedEvent(_UploadEvent):
    video_id: int = Field(..., ge=0)
    metadata: CompletedMetadata = Field(default_factory=CompletedMetadata)


class FailedEvent(_UploadEvent):
    failure_data: FailureData = Field(default_factory=FailureData)


class UploadEventResponse(BaseModel):
    upload_id: str
    event_type: str
    status: str
    correlated: bool = Field(..., description='False when no prepared event was seen for this upload')
    upload_duration: Optional[int] = None
    duration_bucket: Optional[str] = None


def validation_errors(exc) -> List[Dict[str, str]]:
    """Flatten pydantic errors to `[{field, message}]`, field as a dotted path.

    Accepts a pydantic ValidationError or FastAPI's RequestValidationError;
    the `body` prefix of request locations is dropped.
    """
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get('loc', ()) if part not in ('body',)]
        errors.append({'field': '.'.join(loc) or 'body', 'message': error.get('msg', 'Invalid value')})
    return errors


EventT = TypeVar('EventT', bound=BaseModel)


def parse_event(model: Type[EventT], data: Dict[str, Any]) -> EventT:
    """Validate a raw payload.

    Raises:
        UploadEventValidationError: Listing every offending field
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise UploadEventValidationError(validation_errors(e)) from e
