"""Create upload lifecycle and hourly rollup tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
  # One row per upload, transitioned in place prepared -> completed | failed
  op.create_table(
    'upload_metrics',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('upload_id', sa.String(length=255), nullable=False),
    sa.Column('user_id', sa.BigInteger(), nullable=False),
    sa.Column('video_id', sa.BigInteger(), nullable=True),
    sa.Column('event_type', sa.String(length=20), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('file_size', sa.BigInteger(), nullable=True),
    sa.Column('file_name', sa.String(length=255), nullable=True),
    sa.Column('chunk_count', sa.Integer(), nullable=True),
    sa.Column('chunk_size', sa.Integer(), nullable=True),
    sa.Column('chunks_completed', sa.Integer(), nullable=True),
    sa.Column('percentage_completed', sa.Numeric(5, 2), nullable=False, server_default='0'),
    sa.Column('bytes_uploaded', sa.BigInteger(), nullable=False, server_default='0'),
    sa.Column('prepared_at', sa.DateTime(), nullable=True),
    sa.Column('started_at', sa.DateTime(), nullable=True),
    sa.Column('completed_at', sa.DateTime(), nullable=True),
    sa.Column('failed_at', sa.DateTime(), nullable=True),
    sa.Column('upload_duration', sa.Integer(), nullable=True),
    sa.Column('processing_time', sa.Integer(), nullable=True),
    sa.Column('estimated_duration', sa.Integer(), nullable=True),
    sa.Column('error_message', sa.String(length=255), nullable=True),
    sa.Column('error_code', sa.String(length=100), nullable=True),
    sa.Column('error_stage', sa.String(length=50), nullable=True),
    sa.Column('retryable', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('attempt_number', sa.Integer(), nullable=False, server_default='1'),
    sa.Column('upload_speed', sa.Numeric(12, 2), nullable=True),
    sa.Column('connection_quality', sa.Integer(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('upload_id', name='uq_upload_metrics_upload_id'),
  )

  op.create_index('ix_upload_metrics_user_id_created_at', 'upload_metrics', ['user_id', 'created_at'])
  op.create_index(
    'ix_upload_metrics_event_type_created_at', 'upload_metrics', ['event_type', 'created_at']
  )
  op.create_index('ix_upload_metrics_status_created_at', 'upload_metrics', ['status', 'created_at'])
  op.create_index('ix_upload_metrics_video_id', 'upload_metrics', ['video_id'])

  # Closed-hour rollups written by the hourly aggregation job
  op.create_table(
    'upload_metrics_hourly',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('hour', sa.DateTime(), nullable=False),
    sa.Column('total_uploads', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('completed_uploads', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('failed_uploads', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('total_bytes', sa.BigInteger(), nullable=False, server_default='0'),
    sa.Column('avg_duration', sa.Numeric(10, 2), nullable=True),
    sa.Column('avg_speed', sa.Numeric(12, 2), nullable=True),
    sa.Column('completion_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
    sa.Column('duration_distribution', sa.JSON(), nullable=True),
    sa.Column('size_distribution', sa.JSON(), nullable=True),
    sa.Column('error_distribution', sa.JSON(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('hour', name='uq_upload_metrics_hourly_hour'),
  )


def downgrade():
  op.drop_table('upload_metrics_hourly')

  op.drop_index('ix_upload_metrics_video_id', table_name='upload_metrics')
  op.drop_index('ix_upload_metrics_status_created_at', table_name='upload_metrics')
  op.drop_index('ix_upload_metrics_event_type_created_at', table_name='upload_metrics')
  op.drop_index('ix_upload_metrics_user_id_created_at', table_name='upload_metrics')
  op.drop_table('upload_metrics')
