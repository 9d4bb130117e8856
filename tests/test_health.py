"""
Tests for the health check endpoint.
"""

from unittest.mock import MagicMock, patch

import pytest


@pytest.mark.django_db
class TestHealthCheck:
    """Tests for GET /api/health/."""

    def test_healthy_without_redis_or_workers(self, client):
        with patch("ingestion.views.get_celery_worker_count", return_value=0):
            response = client.get("/api/health/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["redis"] == "not_configured"
        assert data["celery_workers"] == 0
        assert data["pending_review"] == 0
        assert data["budget_throttled"] is False

    def test_reports_review_backlog_and_throttle(self, client, services, venue_payload):
        entity, _ = services.staging.stage("venue", venue_payload)
        services.staging.add_flag(entity.id, "manual_check")
        services.budget.record_cost("ai_claude", 45.0)

        with patch("ingestion.views.get_celery_worker_count", return_value=2):
            data = client.get("/api/health/").json()

        assert data["pending_review"] == 1
        assert data["budget_throttled"] is True
        assert data["celery_workers"] == 2

    def test_celery_failure_degrades_gracefully(self, client):
        with patch("ingestion.views.get_celery_worker_count", side_effect=OSError("broker down")):
            response = client.get("/api/health/")

        assert response.status_code == 200
        assert response.json()["celery_workers"] == 0

    def test_database_failure_is_unhealthy(self, client):
        with patch("ingestion.views.connection") as connection, \
                patch("ingestion.views.get_celery_worker_count", return_value=0):
            connection.ensure_connection.side_effect = Exception("db down")
            response = client.get("/api/health/")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
        assert response.json()["pending_review"] is None

    def test_redis_ping(self, client):
        redis_client = MagicMock()
        redis_client.ping.return_value = True

        with patch("ingestion.views.get_redis_connection", return_value=redis_client), \
                patch("ingestion.views.get_celery_worker_count", return_value=0):
            response = client.get("/api/health/")

        assert response.json()["redis"] == "connected"
