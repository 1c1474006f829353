"""API route definitions for service health."""

from datetime import datetime, timezone

from fastapi import APIRouter

from src.services.circuit_breaker import CircuitState, list_breakers

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint.

    Returns:
        Status, timestamp in ISO8601 format, and dependency states
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    # Check database health
    try:
        from src.database import health_check as db_health_check
        db_healthy = await db_health_check()
        health_status["database"] = "healthy" if db_healthy else "unhealthy"
    except Exception:
        health_status["database"] = "unavailable"

    # Check Redis health
    try:
        from src.services.redis_service import health_check as redis_health_check
        redis_healthy = await redis_health_check()
        health_status["redis"] = "healthy" if redis_healthy else "unavailable"
    except Exception:
        health_status["redis"] = "unavailable"

    open_circuits = [b.name for b in list_breakers() if b.state == CircuitState.OPEN]
    health_status["open_circuits"] = open_circuits

    if health_status["database"] != "healthy":
        health_status["status"] = "degraded"

    return health_status
