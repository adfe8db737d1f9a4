"""
Core views providing infrastructure endpoints.

Only the health check lives here; domain endpoints belong to their apps.
"""

import logging

from django.db import connection
from django.http import JsonResponse
from django_redis import get_redis_connection

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Health check endpoint for load balancers and container probes.

    Reports database and Redis connectivity. Redis backs presence, the session
    registry and the channel layer, but a Redis outage only degrades those
    features, so it does not fail the check.

    HTTP Status Codes:
        200: Database reachable
        503: Database unreachable
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "redis": "unknown",
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        logger.exception("Health check: database unreachable")
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        is_healthy = False

    try:
        get_redis_connection("default").ping()
        health_status["redis"] = "connected"
    except Exception:
        logger.warning("Health check: redis unreachable")
        health_status["redis"] = "disconnected"

    return JsonResponse(health_status, status=200 if is_healthy else 503)
