"""Health check endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
import redis

from abengine.database import get_db
from abengine.config import get_settings

router = APIRouter()
settings = get_settings()


@router.get("/health")
@router.head("/health")
async def health_check():
    """Basic health check."""
    return {"status": "healthy", "service": "abengine"}


@router.get("/health/detailed")
async def detailed_health_check(db: Session = Depends(get_db)):
    """
    Detailed health check including database and Redis connectivity.

    Redis is only checked when it backs the experiment cache and gate.
    """
    checks = {
        "api": "healthy",
        "database": "unknown",
        "redis": "disabled"
    }

    # Check database
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)}"

    # Check Redis
    if settings.use_redis:
        try:
            redis_client = redis.from_url(settings.redis_url)
            redis_client.ping()
            checks["redis"] = "healthy"
        except Exception as e:
            checks["redis"] = f"unhealthy: {str(e)}"

    overall_status = "healthy" if all(
        v in ("healthy", "disabled") for v in checks.values()
    ) else "degraded"

    return {
        "status": overall_status,
        "checks": checks
    }
