"""Unit tests for the sample upload seeding CLI."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner
from sqlalchemy.orm import sessionmaker

from relay_metrics.lib.config import PipelineSettings
from relay_metrics.models.upload_metric import UploadMetric
from relay_metrics.models.upload_metric_hourly import UploadMetricHourly
from scripts.seed_sample_uploads import SAMPLE_PREFIX, cli


@pytest.fixture
def runner():
  return CliRunner()


@pytest.fixture
def seeded_db(db_engine):
  """Point the CLI at the in-memory test database."""
  settings = PipelineSettings(database_url='sqlite://')
  factory = sessionmaker(bind=db_engine)
  with (
    patch('scripts.seed_sample_uploads.get_settings', return_value=settings),
    patch('scripts.seed_sample_uploads.get_session_factory', return_value=factory),
  ):
    yield factory


class TestSeed:

  def test_requires_database_url(self, runner):
    with patch('scripts.seed_sample_uploads.get_settings', return_value=PipelineSettings()):
      result = runner.invoke(cli, ['seed'])

    assert result.exit_code == 1
    assert 'DATABASE_URL not set' in result.output

  def test_creates_uploads_and_rollups(self, runner, seeded_db):
    result = runner.invoke(cli, ['seed', '--hours', '2', '--per-hour', '3', '--seed', '7'])

    assert result.exit_code == 0, result.output
    session = seeded_db()
    try:
      rows = session.query(UploadMetric).all()
      assert len(rows) == 6
      assert all(r.upload_id.startswith(SAMPLE_PREFIX) for r in rows)
      assert all(r.event_type in ('completed', 'failed') for r in rows)
      assert session.query(UploadMetricHourly).count() == 2
    finally:
      session.close()

  def test_all_failures(self, runner, seeded_db):
    result = runner.invoke(cli, ['seed', '--hours', '1', '--per-hour', '2', '--failure-rate', '1', '--seed', '1'])

    assert result.exit_code == 0, result.output
    session = seeded_db()
    try:
      assert {r.event_type for r in session.query(UploadMetric).all()} == {'failed'}
    finally:
      session.close()


class TestCleanup:

  def test_requires_confirmation(self, runner):
    result = runner.invoke(cli, ['cleanup'])

    assert result.exit_code == 0
    assert '--confirm' in result.output

  def test_deletes_only_sample_rows(self, runner, seeded_db, db_session, clock):
    runner.invoke(cli, ['seed', '--hours', '1', '--per-hour', '2', '--seed', '3'])
    db_session.add(UploadMetric(
      upload_id='real-upload', user_id=1, event_type='prepared', status='ready',
      created_at=clock.now, updated_at=clock.now,
    ))
    db_session.commit()

    result = runner.invoke(cli, ['cleanup', '--confirm'])

    assert result.exit_code == 0
    assert 'Deleted 2 sample uploads' in result.output
    db_session.expire_all()
    assert [r.upload_id for r in db_session.query(UploadMetric).all()] == ['real-upload']
