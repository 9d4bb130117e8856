"""
Ingestion service views.

Includes the health check endpoint for monitoring and load balancer checks.
"""

import logging

from django.db import connection
from django.http import JsonResponse

from ingestion.models import StagedEntity, StagingStatus
from ingestion.services import get_services

logger = logging.getLogger(__name__)


def get_redis_connection():
    """
    Get Redis connection for health check.

    Returns:
        Redis client if the cache is backed by django_redis, None otherwise.
    """
    from django.core.cache import cache

    if hasattr(cache, "client") and hasattr(cache.client, "get_client"):
        return cache.client.get_client()
    return None


def get_celery_worker_count():
    """
    Get the count of active Celery workers.

    Returns:
        int: Number of active workers, 0 if none answered.
    """
    from config.celery import app as celery_app

    active = celery_app.control.inspect(timeout=1.0).active()
    if active:
        return len(active)
    return 0


def health_check(request):
    """
    Health check endpoint for the ingestion service.

    Endpoint: GET /api/health/
    No authentication required (for load balancer checks).

    Response fields:
        - status: "healthy" or "unhealthy"
        - database: "connected" or "error"
        - redis: "connected", "not_configured", or "error"
        - celery_workers: integer count of active workers
        - pending_review: entities waiting in the review queue
        - budget_throttled: whether new runs are currently refused

    Returns:
        JsonResponse: HTTP 200 for healthy, HTTP 503 for unhealthy
    """
    status = "healthy"
    http_status = 200

    # Check database connection
    database_status = "connected"
    try:
        connection.ensure_connection()
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        database_status = "error"
        status = "unhealthy"
        http_status = 503

    # Check Redis connection (graceful degradation)
    redis_status = "not_configured"
    try:
        redis_client = get_redis_connection()
        if redis_client is not None:
            redis_status = "connected" if redis_client.ping() else "error"
    except Exception as e:
        logger.warning(f"Health check redis error: {e}")
        redis_status = "error"

    # Check Celery workers (graceful degradation)
    try:
        celery_workers = get_celery_worker_count()
    except Exception as e:
        logger.warning(f"Health check celery error: {e}")
        celery_workers = 0

    pending_review = None
    budget_throttled = None
    if database_status == "connected":
        try:
            pending_review = StagedEntity.objects.filter(status=StagingStatus.NEEDS_REVIEW).count()
            budget_throttled = get_services().budget.is_throttled().throttled
        except Exception as e:
            logger.warning(f"Health check metrics error: {e}")

    response_data = {
        "status": status,
        "database": database_status,
        "redis": redis_status,
        "celery_workers": celery_workers,
        "pending_review": pending_review,
        "budget_throttled": budget_throttled,
    }

    return JsonResponse(response_data, status=http_status)
