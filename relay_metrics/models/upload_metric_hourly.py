from sqlalchemy import BigInteger, Column, DateTime, Integer, JSON, Numeric, UniqueConstraint

from relay_metrics.lib.clock import utc_now
from relay_metrics.lib.database import Base


class UploadMetricHourly(Base):
    """
    Pre-computed upload statistics for one closed hour.
    Written only by the hourly aggregator, one row per `hour`.
    """
    __tablename__ = 'upload_metrics_hourly'

    id = Column(Integer, primary_key=True, autoincrement=True)
    hour = Column(DateTime, nullable=False)
    total_uploads = Column(Integer, nullable=False, default=0)
    completed_uploads = Column(Integer, nullable=False, default=0)
    failed_uploads = Column(Integer, nullable=False, default=0)
    total_bytes = Column(BigInteger, nullable=False, default=0)
    avg_duration = Column(Numeric(10, 2, asdecimal=False), nullable=True)
    avg_speed = Column(Numeric(12, 2, asdecimal=False), nullable=True)
    completion_rate = Column(Numeric(5, 2, asdecimal=False), nullable=False, default=0)
    duration_distribution = Column(JSON, nullable=True)
    size_distribution = Column(JSON, nullable=True)
    error_distribution = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('hour', name='uq_upload_metrics_hourly_hour'),
    )

    def to_dict(self):
        return {
            'hour': self.hour.isoformat() if self.hour else None,
            'total_uploads': self.total_uploads,
            'completed_uploads': self.completed_uploads,
            'failed_uploads': self.failed_uploads,
            'total_bytes': self.total_bytes,
            'avg_duration': self.avg_duration,
            'avg_speed': self.avg_speed,
            'completion_rate': self.completion_rate,
            'duration_distribution': self.duration_distribution or {},
            'size_distribution': self.size_distribution or {},
            'error_distribution': self.error_distribution or {},
        }
