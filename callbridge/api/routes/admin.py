"""
Admin dashboard routes
"""

from fastapi import APIRouter, Depends, Query

from callbridge.core.logging import get_logger
from callbridge.services.tenant_service import TenantService, get_tenant_service

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def get_service() -> TenantService:
    return get_tenant_service()


@router.get("/dashboard")
async def dashboard(service: TenantService = Depends(get_service)):
    """
    Tenant counts and call totals across all tenants
    """
    return await service.dashboard()


@router.get("/activity")
async def recent_activity(
    days: int = Query(7, ge=1, le=365),
    limit: int = Query(10, ge=1, le=500),
    service: TenantService = Depends(get_service)
):
    """
    Most recent calls across all tenants
    """
    return await service.recent_activity(days=days, limit=limit)
