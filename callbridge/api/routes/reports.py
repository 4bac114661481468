"""
Agent metrics reporting routes
"""

from typing import Optional
from fastapi import APIRouter, Depends

from callbridge.core.logging import get_logger
from callbridge.models.metrics import MetricsSource
from callbridge.services.metrics_service import MetricsService, get_metrics_service, period_key

logger = get_logger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


def get_service() -> MetricsService:
    return get_metrics_service()


@router.get("/agent-metrics")
async def agent_metrics(
    tenant_id: str,
    period: Optional[str] = None,
    source: MetricsSource = MetricsSource.INTERNAL,
    service: MetricsService = Depends(get_service)
):
    """
    Metrics for every agent of a tenant in one month (current month by default)
    """
    period = period or period_key()
    agents = await service.get_all_agent_metrics(tenant_id, period, source)
    return {"tenant_id": tenant_id, "period": period, "source": source.value, "agents": agents}


@router.get("/comparison")
async def comparison(
    tenant_id: str,
    agent_id: str,
    period: str,
    previous_period: str,
    service: MetricsService = Depends(get_service)
):
    """
    Percent change of an agent's metrics between two months
    """
    return await service.compare(tenant_id, agent_id, previous_period, period)


@router.post("/sync-voice")
async def sync_voice(
    tenant_id: str,
    period: Optional[str] = None,
    service: MetricsService = Depends(get_service)
):
    period = period or period_key()
    entries = await service.sync_voice_metrics(tenant_id, period)
    logger.info(f"Synced voice metrics for {len(entries)} agent(s) of tenant {tenant_id}")
    return {
        "success": True,
        "tenant_id": tenant_id,
        "period": period,
        "agents": [e.model_dump(mode="json") for e in entries]
    }


@router.post("/sync-crm-appointments")
async def sync_crm_appointments(
    tenant_id: str,
    period: Optional[str] = None,
    service: MetricsService = Depends(get_service)
):
    period = period or period_key()
    entries = await service.sync_crm_appointments(tenant_id, period)
    return {
        "success": True,
        "tenant_id": tenant_id,
        "period": period,
        "agents": [e.model_dump(mode="json") for e in entries]
    }


@router.get("/combined-metrics")
async def combined_metrics(
    tenant_id: str,
    period: Optional[str] = None,
    service: MetricsService = Depends(get_service)
):
    return await service.combined_report(tenant_id, period or period_key())


@router.post("/recalculate")
async def recalculate(
    tenant_id: str,
    period: Optional[str] = None,
    service: MetricsService = Depends(get_service)
):
    """
    Rebuild internal metrics for a month from the stored call history
    """
    period = period or period_key()
    entries = await service.recalculate_from_history(tenant_id, period)
    return {
        "success": True,
        "tenant_id": tenant_id,
        "period": period,
        "agents": [e.model_dump(mode="json") for e in entries]
    }
