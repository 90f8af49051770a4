"""
Contract tests for /health, /metrics and the correlation ID middleware.
"""

from unittest.mock import patch
from uuid import UUID


# ============================================================================
# GET /health
# ============================================================================

def test_health_without_database(client):
    with patch('relay_metrics.app.is_database_configured', return_value=False):
        response = client.get('/health')

    assert response.status_code == 200
    assert response.json() == {'status': 'healthy', 'database': 'not_configured'}


def test_health_with_database(client):
    with (
        patch('relay_metrics.app.is_database_configured', return_value=True),
        patch('relay_metrics.app.check_connection', return_value=True),
    ):
        response = client.get('/health')

    assert response.json()['database'] == 'connected'


def test_health_database_unreachable_is_still_healthy(client):
    with (
        patch('relay_metrics.app.is_database_configured', return_value=True),
        patch('relay_metrics.app.check_connection', return_value=False),
    ):
        response = client.get('/health')

    assert response.status_code == 200
    assert response.json() == {'status': 'healthy', 'database': 'unavailable'}


# ============================================================================
# GET /metrics (pipeline self-metrics)
# ============================================================================

def test_prometheus_exposition(client):
    response = client.get('/metrics')

    assert response.status_code == 200
    assert response.headers['content-type'].startswith('text/plain')
    assert '# HELP relay_scrape_cycles_total' in response.text
    assert 'relay_snapshot_generation' in response.text


def test_api_requests_are_timed(client):
    client.get('/api/v1/metrics/uploads')

    response = client.get('/metrics')

    assert 'relay_request_duration_seconds_count{endpoint="/api/v1/metrics/uploads"' in response.text


# ============================================================================
# X-Correlation-ID
# ============================================================================

def test_correlation_id_is_echoed(client, correlation_id):
    response = client.get('/api/v1/metrics/uploads', headers={'X-Correlation-ID': correlation_id})

    assert response.headers['X-Correlation-ID'] == correlation_id


def test_correlation_id_is_generated(client):
    response = client.get('/health')

    UUID(response.headers['X-Correlation-ID'])
