"""Unit tests for JSON request logging."""

import json
import logging

import pytest

from relay_metrics.lib.structured_logger import JSONFormatter, _request_logger, log_request


class ListHandler(logging.Handler):

  def __init__(self):
    super().__init__()
    self.setFormatter(JSONFormatter())
    self.lines = []

  def emit(self, record):
    self.lines.append(json.loads(self.format(record)))


@pytest.fixture
def captured():
  handler = ListHandler()
  _request_logger.logger.addHandler(handler)
  yield handler.lines
  _request_logger.logger.removeHandler(handler)


@pytest.mark.parametrize('status_code,level', [
  (200, 'INFO'),
  (201, 'INFO'),
  (409, 'WARNING'),
  (422, 'WARNING'),
  (502, 'ERROR'),
])
def test_level_follows_status_code(captured, status_code, level):
  log_request('/api/v1/metrics/refresh', 'POST', status_code, 12.5)

  assert captured[-1]['level'] == level
  assert captured[-1]['message'] == 'POST /api/v1/metrics/refresh'
  assert captured[-1]['status_code'] == status_code
  assert captured[-1]['duration_ms'] == 12.5


def test_sensitive_extras_are_dropped(captured):
  _request_logger.warning('login attempt', user_id=7, auth_token='abc')

  assert captured[-1]['user_id'] == 7
  assert 'auth_token' not in captured[-1]
