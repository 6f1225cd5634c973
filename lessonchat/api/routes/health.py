"""
Health and readiness check API endpoints
"""

from fastapi import APIRouter, HTTPException
from lessonchat.services.health_service import HealthService

router = APIRouter()
health_service = HealthService()


@router.get("/healthz")
async def liveness_check():
    """
    Liveness check endpoint

    Returns:
        Basic health status indicating the process is serving requests
    """
    return health_service.liveness_check()


@router.get("/readyz")
async def readiness_check():
    """
    Readiness check endpoint

    Returns:
        Readiness status with per-component health; 503 when a required
        component (database, key-value store) is down
    """
    result = await health_service.readiness_check()
    if result["status"] != "ready":
        raise HTTPException(status_code=503, detail=result)
    return result
