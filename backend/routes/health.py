# Health check endpoints for system monitoring

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from datetime import datetime, timezone

from core.database import get_db_health

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness_check():
    """
    Basic liveness check - returns 200 if the service is running
    Used by load balancers and orchestrators
    """
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "storefront-orders"
    }


@router.get("/ready")
async def readiness_check():
    """Readiness check - the service is ready once the database answers"""
    database = await get_db_health()
    ready = database.get("status") == "healthy"
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "not_ready",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": database,
        }
    )
