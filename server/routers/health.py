"""
Health check endpoints for deployment.

Provides:
- /health - Basic liveness check (is the app running?)
- /ready - Readiness check (is Redis reachable, when configured?)
- /metrics - Room and match counts for monitoring
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

# Service references (set during app initialization)
_redis_client = None
_room_manager = None


def set_health_dependencies(redis_client=None, room_manager=None):
    """Set dependencies for health checks."""
    global _redis_client, _room_manager
    _redis_client = redis_client
    _room_manager = room_manager


@router.get("/health")
async def health_check():
    """Liveness check: always 200 while the process is up."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness check - can the app handle requests?

    Redis is optional; when configured and unreachable the server is
    reported degraded with a 503.
    """
    checks = {}
    overall_healthy = True

    if _redis_client is not None:
        try:
            await _redis_client.ping()
            checks["redis"] = {"status": "ok"}
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            checks["redis"] = {"status": "error", "message": str(e)}
            overall_healthy = False
    else:
        checks["redis"] = {"status": "not_configured"}

    return JSONResponse(
        content={
            "status": "ok" if overall_healthy else "degraded",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        status_code=200 if overall_healthy else 503,
    )


@router.get("/metrics")
async def metrics():
    """Room, player and match counts."""
    metrics_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if _room_manager is not None:
        stats = _room_manager.stats()
        metrics_data.update({
            "active_rooms": stats["rooms"],
            "total_players": stats["players"],
            "matches_in_progress": stats["matches_in_progress"],
        })
    return metrics_data
