"""
Health Check Endpoints.

Provides health status for the API and its dependencies.
"""
import os
import time
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..models import HealthStatus
from ..deps import get_mfa_service, get_redis_client
from ...auth.errors import PersistenceUnavailable
from ...auth.service import MFAService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

# Version from environment or default
VERSION = os.getenv("APP_VERSION", "0.1.0")


@router.get("", response_model=HealthStatus)
async def health_check(service: MFAService = Depends(get_mfa_service)):
    """
    Basic health check endpoint.

    Returns overall system status.
    """
    services = {}
    overall_healthy = True

    # Check credential store
    try:
        start = time.time()
        service.store.ping()
        latency = (time.time() - start) * 1000
        services["credential_store"] = f"healthy ({latency:.1f}ms)"
    except PersistenceUnavailable as e:
        services["credential_store"] = f"unhealthy: {str(e)}"
        overall_healthy = False

    services["mfa_sessions"] = f"{len(service.registry)} active"

    # Check Redis
    try:
        redis_client = get_redis_client()
        if redis_client:
            start = time.time()
            redis_client.ping()
            latency = (time.time() - start) * 1000
            services["redis"] = f"healthy ({latency:.1f}ms)"
        else:
            services["redis"] = "fallback_mode (in-memory)"
    except Exception as e:
        services["redis"] = f"unhealthy: {str(e)}"
        # Redis failure is not critical - we have in-memory fallback

    return HealthStatus(
        status="healthy" if overall_healthy else "unhealthy",
        version=VERSION,
        services=services,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.

    Returns 200 if the service is running.
    """
    return {"status": "alive"}


@router.get("/ready")
async def readiness(service: MFAService = Depends(get_mfa_service)):
    """
    Kubernetes readiness probe.

    Returns 200 if the credential store accepts queries, 503 otherwise.
    """
    try:
        service.store.ping()
        return {"status": "ready"}
    except PersistenceUnavailable as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})
