from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from relay_metrics.lib.clock import utc_now
from relay_metrics.lib.database import Base


class UploadMetric(Base):
    """
    One row per tracked upload.
    The row is inserted as `prepared` and transitioned in place to
    `completed` or `failed`; terminal rows are never reopened.
    """
    __tablename__ = 'upload_metrics'

    id = Column(Integer, primary_key=True, autoincrement=True)
    upload_id = Column(String(255), nullable=False)
    user_id = Column(BigInteger, nullable=False)
    video_id = Column(BigInteger, nullable=True)
    event_type = Column(String(20), nullable=False)  # prepared, completed, failed
    status = Column(String(20), nullable=False)  # ready, completed, failed

    file_size = Column(BigInteger, nullable=True)
    file_name = Column(String(255), nullable=True)
    chunk_count = Column(Integer, nullable=True)
    chunk_size = Column(Integer, nullable=True)
    chunks_completed = Column(Integer, nullable=True)

    percentage_completed = Column(Numeric(5, 2, asdecimal=False), nullable=False, default=0)
    bytes_uploaded = Column(BigInteger, nullable=False, default=0)

    prepared_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    upload_duration = Column(Integer, nullable=True)  # seconds
    processing_time = Column(Integer, nullable=True)  # milliseconds
    estimated_duration = Column(Integer, nullable=True)  # seconds

    error_message = Column(String(255), nullable=True)
    error_code = Column(String(100), nullable=True)
    error_stage = Column(String(50), nullable=True)
    retryable = Column(Boolean, nullable=False, default=False)
    attempt_number = Column(Integer, nullable=False, default=1)

    upload_speed = Column(Numeric(12, 2, asdecimal=False), nullable=True)  # bytes per second
    connection_quality = Column(Integer, nullable=True)  # 1-5

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('upload_id', name='uq_upload_metrics_upload_id'),
        Index('ix_upload_metrics_user_id_created_at', 'user_id', 'created_at'),
        Index('ix_upload_metrics_event_type_created_at', 'event_type', 'created_at'),
        Index('ix_upload_metrics_status_created_at', 'status', 'created_at'),
        Index('ix_upload_metrics_video_id', 'video_id'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.event_type in ('completed', 'failed')
