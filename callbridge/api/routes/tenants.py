"""
Tenant Management API Routes
Tenants, their agents, call history and outbound calls
"""

import re
from typing import Optional
from urllib.parse import urlencode
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from callbridge.api.middleware import get_request_id
from callbridge.core.config import settings
from callbridge.core.exceptions import AgentNotFoundError, CallNotFoundError, InvalidPhoneNumberError, TwilioServiceError
from callbridge.core.logging import get_logger
from callbridge.models.call import CallDirection, MakeCallRequest
from callbridge.models.tenant import AgentCreate, AgentUpdate, TenantCreate, TenantStatus, TenantUpdate
from callbridge.services.call_records import get_call_record_writer
from callbridge.services.crm.ghl_service import get_ghl_service
from callbridge.services.telephony.twilio_service import get_twilio_service
from callbridge.services.tenant_service import TenantService, get_tenant_service

logger = get_logger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"])

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def get_service() -> TenantService:
    """Dependency to get tenant service"""
    return get_tenant_service()


# ==================== Tenants ====================

@router.post("", status_code=201)
async def create_tenant(
    data: TenantCreate,
    service: TenantService = Depends(get_service)
):
    """
    Create a new tenant

    The response is the only time the client secret is shown, apart from
    a secret reset.
    """
    tenant = await service.create_tenant(data)
    return {"message": "Tenant created successfully", "tenant": tenant.public_dict(include_secret=True)}


@router.get("")
async def list_tenants(
    status: Optional[TenantStatus] = None,
    service: TenantService = Depends(get_service)
):
    tenants = await service.list_tenants(status)
    return {"count": len(tenants), "tenants": [t.public_dict() for t in tenants]}


@router.get("/{tenant_id}")
async def get_tenant(
    tenant_id: str,
    service: TenantService = Depends(get_service)
):
    return (await service.get_tenant(tenant_id)).public_dict()


@router.put("/{tenant_id}")
async def update_tenant(
    tenant_id: str,
    updates: TenantUpdate,
    service: TenantService = Depends(get_service)
):
    tenant = await service.update_tenant(tenant_id, updates)
    return {"message": "Tenant updated successfully", "tenant": tenant.public_dict()}


@router.delete("/{tenant_id}")
async def delete_tenant(
    tenant_id: str,
    service: TenantService = Depends(get_service)
):
    await service.delete_tenant(tenant_id)
    return {"message": f"Tenant {tenant_id} deleted"}


@router.post("/{tenant_id}/reset-secret")
async def reset_secret(
    tenant_id: str,
    service: TenantService = Depends(get_service)
):
    tenant, secret = await service.reset_secret(tenant_id)
    return {
        "message": "Client secret reset successfully",
        "tenant_id": tenant.tenant_id,
        "client_token": tenant.client_token,
        "client_secret": secret
    }


# ==================== Calls ====================

@router.get("/{tenant_id}/calls")
async def list_calls(
    tenant_id: str,
    status: Optional[str] = None,
    offset: int = 0,
    limit: int = 50,
    service: TenantService = Depends(get_service)
):
    return await service.list_calls(tenant_id, status=status, offset=offset, limit=limit)


@router.get("/{tenant_id}/calls/{call_sid}")
async def get_call(
    tenant_id: str,
    call_sid: str,
    service: TenantService = Depends(get_service)
):
    entry = (await service.get_tenant(tenant_id)).find_call(call_sid)
    if entry is None:
        raise CallNotFoundError(call_sid)
    return entry.model_dump(mode="json")


@router.post("/{tenant_id}/calls")
async def make_call(
    tenant_id: str,
    body: MakeCallRequest,
    request_id: str = Depends(get_request_id),
    service: TenantService = Depends(get_service)
):
    """
    Place an outbound AI call for a tenant

    Twilio fetches the call's TwiML from /outbound-call-twiml once the
    callee answers; status changes arrive on /call-status.
    """
    phone = (body.phone or "").strip()
    if not E164_PATTERN.match(phone):
        raise InvalidPhoneNumberError(phone, request_id=request_id)

    tenant = await service.get_active_tenant(tenant_id)

    agent = tenant.find_agent_by_id(body.agent_id) if body.agent_id else tenant.primary_agent()
    if agent is None:
        raise AgentNotFoundError(tenant_id, body.agent_id)

    meta = tenant.client_meta
    params = {
        "tenant_id": tenant.tenant_id,
        "agent_id": agent.agent_id,
        "full_name": meta.full_name,
        "business_name": meta.business_name,
        "city": meta.city,
        "job_title": meta.job_title,
        "email": meta.email,
        "phone": phone,
        "requestId": request_id,
    }
    twiml_url = f"{settings.public_base_url}/outbound-call-twiml?" + urlencode({k: v for k, v in params.items() if v})
    status_callback_url = f"{settings.public_base_url}/call-status?" + urlencode(
        {"requestId": request_id, "tenant_id": tenant.tenant_id}
    )

    logger.info(f"[{request_id}] Placing outbound call to {phone} for tenant {tenant_id}")
    result = await get_twilio_service().create_call(
        to_number=phone,
        from_number=agent.twilio_phone_number,
        twiml_url=twiml_url,
        status_callback_url=status_callback_url
    )
    if not result.get("success"):
        raise TwilioServiceError(result.get("error", "Unknown error"), result.get("code"), request_id=request_id)

    await get_call_record_writer().record_call_start(
        tenant.tenant_id,
        result["call_sid"],
        CallDirection.OUTBOUND,
        phone=phone,
        from_number=agent.twilio_phone_number,
        agent_id=agent.agent_id,
        request_id=request_id
    )

    logger.info(f"[{request_id}] Outbound call initiated successfully: {result['call_sid']}")
    return {
        "success": True,
        "message": "Call initiated",
        "requestId": request_id,
        "callSid": result["call_sid"],
        "tenantId": tenant.tenant_id,
        "agentId": agent.agent_id
    }


@router.get("/{tenant_id}/crm-token-status")
async def crm_token_status(tenant_id: str):
    return await get_ghl_service().token_status(tenant_id)


class RefreshCrmTokenRequest(BaseModel):
    force: bool = False


@router.post("/{tenant_id}/refresh-crm-token")
async def refresh_crm_token(tenant_id: str, body: Optional[RefreshCrmTokenRequest] = None):
    """
    Refresh the tenant's GHL access token

    With force the token is exchanged even while the stored one is still valid.
    """
    force = body.force if body else False
    return await get_ghl_service().refresh_tenant_token(tenant_id, force=force)


# ==================== Agents ====================

@router.get("/{tenant_id}/agents")
async def list_agents(
    tenant_id: str,
    service: TenantService = Depends(get_service)
):
    agents = await service.list_agents(tenant_id)
    return {"tenant_id": tenant_id, "count": len(agents), "agents": [a.model_dump(mode="json") for a in agents]}


@router.post("/{tenant_id}/agents", status_code=201)
async def add_agent(
    tenant_id: str,
    data: AgentCreate,
    service: TenantService = Depends(get_service)
):
    agent = await service.add_agent(tenant_id, data)
    return {"message": "Agent added successfully", "agent": agent.model_dump(mode="json")}


@router.put("/{tenant_id}/agents/{agent_id}")
async def update_agent(
    tenant_id: str,
    agent_id: str,
    data: AgentUpdate,
    service: TenantService = Depends(get_service)
):
    agent = await service.update_agent(tenant_id, agent_id, data)
    return {"message": "Agent updated successfully", "agent": agent.model_dump(mode="json")}


@router.delete("/{tenant_id}/agents/{agent_id}")
async def remove_agent(
    tenant_id: str,
    agent_id: str,
    service: TenantService = Depends(get_service)
):
    await service.remove_agent(tenant_id, agent_id)
    return {"message": f"Agent {agent_id} removed"}
