"""
Health check and status endpoints
"""

from datetime import datetime, timezone
from fastapi import APIRouter

from callbridge import __version__
from callbridge.core.config import settings
from callbridge.core.logging import get_logger
from callbridge.services.redis_service import ping_redis
from callbridge.services.session_store import get_session_store

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness check - verifies the service is ready to handle calls
    """
    checks = {
        "twilio": bool(settings.twilio_account_sid and settings.twilio_auth_token),
        "elevenlabs": bool(settings.elevenlabs_api_key),
        "ghl": bool(settings.ghl_client_id and settings.ghl_client_secret)
    }
    if settings.storage_backend.lower() == "redis":
        checks["redis"] = await ping_redis()

    # CRM is optional; calls still flow without it
    ready = checks["twilio"] and checks["elevenlabs"] and checks.get("redis", True)

    return {
        "status": "ready" if ready else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks
    }


@router.get("/status")
async def service_status():
    """
    Service name and number of live relay sessions
    """
    return {
        "service": "CallBridge",
        "version": __version__,
        "environment": settings.environment,
        "storage_backend": settings.storage_backend,
        "active_sessions": await get_session_store().count()
    }
