"""
Health Check Endpoints

Liveness, readiness of the feedback history store and a short summary of the
coaching engine's live state.
"""

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import ORJSONResponse

from meetcoach import __version__
from meetcoach.engine import CoachingEngine, get_engine

logger = structlog.get_logger()

router = APIRouter()


@router.get("/health")
async def health_check(engine: CoachingEngine = Depends(get_engine)) -> dict:
    """Version plus live meeting and stream counts."""
    from meetcoach.db.redis import is_initialized

    stats = engine.get_stats()
    return {
        "status": "healthy",
        "version": __version__,
        "meetings": stats["aggregator"]["meetings"],
        "prosody_streams": stats["prosody"]["connections"],
        "history": "enabled" if is_initialized() else "disabled",
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once the feedback history store answers a ping."""
    from meetcoach.db.redis import get_redis

    try:
        redis = await get_redis()
        await redis.ping()
    except RuntimeError:
        return ORJSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "history": "not initialized"},
        )
    except Exception as e:
        logger.warning("Readiness check failed", error=str(e))
        return ORJSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "history": "unreachable"},
        )

    return {"status": "ready"}


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness check."""
    return {"status": "alive"}
