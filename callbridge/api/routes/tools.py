"""
Voice-agent tool routes
Webhooks the voice agent calls during a conversation: tenant discovery,
caller personalization, calendar availability, appointment booking and
relative dates.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Dict, Any, Tuple
from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from callbridge.api.middleware import get_request_id
from callbridge.core.exceptions import (
    ContactNotFoundError,
    CRMConflictError,
    CRMServiceError,
    TenantNotFoundError,
    ValidationError
)
from callbridge.core.logging import get_logger
from callbridge.models.tenant import AgentView, Tenant
from callbridge.services.call_records import get_call_record_writer
from callbridge.services.crm.ghl_service import get_ghl_service
from callbridge.services.metrics_service import get_metrics_service
from callbridge.services.tenant_service import get_tenant_service

logger = get_logger(__name__)

router = APIRouter(prefix="/tools", tags=["tools"])

DEFAULT_GREETING = {"conversation_config_override": {"agent": {"first_message": "Hello!"}}}
DEFAULT_TIMEZONE = "America/New_York"
CONFLICT_MARKERS = ("already booked", "unavailable", "not available")


class DiscoverClientRequest(BaseModel):
    tenant_id: Optional[str] = None
    phone: Optional[str] = None
    twilio_phone: Optional[str] = None
    agent_id: Optional[str] = None


class GetInfoRequest(BaseModel):
    caller_id: Optional[str] = None
    called_number: Optional[str] = None
    agent_id: Optional[str] = None
    call_sid: Optional[str] = None


class AvailabilityRequest(BaseModel):
    tenant_id: Optional[str] = None
    twilio_phone: Optional[str] = None
    agent_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    timezone: str = DEFAULT_TIMEZONE


class BookAppointmentRequest(BaseModel):
    tenant_id: Optional[str] = None
    twilio_phone: Optional[str] = None
    agent_id: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    meeting_title: Optional[str] = None
    meeting_location: Optional[str] = None
    call_sid: Optional[str] = None


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


async def _locate_tenant(
    tenant_id: Optional[str],
    twilio_phone: Optional[str],
    agent_id: Optional[str],
    request_id: str
) -> Tuple[Tenant, Optional[AgentView]]:
    """Find the active tenant by carrier number, then tenant id, then agent id"""
    service = get_tenant_service()

    if twilio_phone:
        match = await service.find_tenant_by_any_agent(phone=twilio_phone)
        if match:
            return match["tenant"], match["agent"]
    if tenant_id:
        tenant = await service.get_active_tenant(tenant_id)
        return tenant, tenant.find_agent_by_id(agent_id) if agent_id else None
    if agent_id:
        match = await service.find_tenant_by_any_agent(agent_id=agent_id)
        if match:
            return match["tenant"], match["agent"]

    raise TenantNotFoundError(tenant_id or twilio_phone or agent_id or "", request_id=request_id)


def _require_crm(tenant: Tenant, request_id: str) -> str:
    if not tenant.cal_id:
        raise ValidationError("Tenant does not have a calendar ID configured", field="cal_id", request_id=request_id)
    if not tenant.has_crm_integration:
        raise ValidationError("Tenant does not have GHL integration set up", request_id=request_id)
    return tenant.cal_id


def _today() -> date:
    return datetime.now(timezone.utc).date()


@router.post("/discover-client")
async def discover_client(body: DiscoverClientRequest, request_id: str = Depends(get_request_id)):
    """
    Identify the tenant behind a conversation

    Tries the carrier number, the tenant id, the agent id and the tenant's
    contact phone, in that order.
    """
    logger.info(f"[{request_id}] Client discovery request")

    match = await get_tenant_service().discover_tenant(
        twilio_phone=body.twilio_phone,
        tenant_id=body.tenant_id,
        agent_id=body.agent_id,
        customer_phone=body.phone
    )
    if match is None:
        error = TenantNotFoundError(
            body.twilio_phone or body.tenant_id or body.agent_id or body.phone or "", request_id=request_id
        )
        error.details["searched_for"] = body.model_dump()
        raise error

    tenant: Tenant = match["tenant"]
    agent: Optional[AgentView] = match["agent"]
    logger.info(f"[{request_id}] Client found by {match['found_by']}: {tenant.tenant_id}")

    return {
        "requestId": request_id,
        "tenantId": tenant.tenant_id,
        "clientName": tenant.client_meta.full_name,
        "businessName": tenant.client_meta.business_name,
        "twilioPhoneNumber": tenant.twilio_phone_number,
        "status": tenant.status.value,
        "hasCrmIntegration": tenant.has_crm_integration,
        "hasCalendar": bool(tenant.cal_id),
        "foundBy": match["found_by"],
        "matchedAgent": agent.model_dump(mode="json") if agent else None,
        "totalAgents": len(tenant.get_all_agents())
    }


@router.post("/get-info")
async def get_info(body: GetInfoRequest, request_id: str = Depends(get_request_id)):
    """
    Personalize an inbound call's greeting from the caller's CRM contact

    Any miss along the way answers with the generic greeting rather than
    an error, so the call always starts.
    """
    if not body.caller_id or not body.called_number:
        raise ValidationError("Missing required parameters: caller_id, called_number", request_id=request_id)

    logger.info(f"[{request_id}] Personalization request for {body.caller_id} calling {body.called_number}")

    try:
        match = await get_tenant_service().find_tenant_by_any_agent(phone=body.called_number)
        if match is None:
            logger.info(f"[{request_id}] No tenant found for called number: {body.called_number}")
            return DEFAULT_GREETING

        tenant = match["tenant"]
        if not tenant.has_crm_integration:
            logger.info(f"[{request_id}] Tenant {tenant.tenant_id} has no GHL refresh token")
            return DEFAULT_GREETING

        crm = get_ghl_service()
        token = await crm.ensure_valid_access_token(tenant.tenant_id)
        contact = await crm.find_contact_by_phone(token["access_token"], body.caller_id, tenant.tenant_id)
    except Exception as e:
        logger.error(f"[{request_id}] Error personalizing call: {e}")
        return DEFAULT_GREETING

    if not contact:
        logger.info(f"[{request_id}] No contact found in GHL for caller: {body.caller_id}")
        return DEFAULT_GREETING

    name = f"{contact.get('firstName') or ''} {contact.get('lastName') or ''}".strip() or "there"
    dynamic_variables = {
        "customer_name": name,
        "email": contact.get("email") or "",
        "company": contact.get("companyName") or "",
        "jobTitle": contact.get("title") or "",
        "city": contact.get("city") or "",
    }
    logger.info(f"[{request_id}] Retrieved contact information for {name}")
    return {
        "dynamic_variables": dynamic_variables,
        "conversation_config_override": {
            "agent": {"first_message": f"Hey {name.split(' ')[0]}, how is it going?"}
        }
    }


@router.post("/get-availability")
async def get_availability(body: AvailabilityRequest, request_id: str = Depends(get_request_id)):
    """
    Free calendar slots for the tenant, defaulting to the next seven days
    """
    tenant, agent = await _locate_tenant(body.tenant_id, body.twilio_phone, body.agent_id, request_id)
    cal_id = _require_crm(tenant, request_id)

    start = _utc(body.start_date) if body.start_date else datetime.now(timezone.utc)
    end = _utc(body.end_date) if body.end_date else start + timedelta(days=7)
    if end <= start:
        raise ValidationError("end_date must be after start_date", field="end_date", request_id=request_id)

    logger.info(f"[{request_id}] Fetching availability for calendar: {cal_id}")

    crm = get_ghl_service()
    token = await crm.ensure_valid_access_token(tenant.tenant_id)
    availability = await crm.get_free_slots(
        token["access_token"], cal_id, _epoch_ms(start), _epoch_ms(end), body.timezone
    )

    return {
        "requestId": request_id,
        "tenantId": tenant.tenant_id,
        "matchedAgent": agent.model_dump(mode="json") if agent else None,
        "dateRange": {"start": start.isoformat(), "end": end.isoformat()},
        "timezone": body.timezone,
        "availability": availability,
        "slots": (availability.get("_dates_") or {}).get("slots", [])
    }


@router.post("/book-appointment")
async def book_appointment(body: BookAppointmentRequest, request_id: str = Depends(get_request_id)):
    """
    Book a calendar appointment for the caller's CRM contact

    A successful booking marks the call as booked and counts toward the
    agent's metrics; a metrics failure does not fail the booking.
    """
    tenant, agent = await _locate_tenant(body.tenant_id, body.twilio_phone, body.agent_id, request_id)

    if not body.start_time or not body.end_time:
        raise ValidationError("Both start_time and end_time are required", request_id=request_id)
    phone = (body.phone or "").strip()
    if not phone or phone == "unknown":
        raise ValidationError("A valid phone number is required to find the contact", field="phone", request_id=request_id)
    if not phone.startswith("+"):
        phone = "+" + phone

    cal_id = _require_crm(tenant, request_id)

    crm = get_ghl_service()
    token = await crm.ensure_valid_access_token(tenant.tenant_id)
    contact = await crm.find_contact_by_phone(token["access_token"], phone, tenant.tenant_id)
    if not contact or not contact.get("id"):
        raise ContactNotFoundError(phone, request_id=request_id)

    if body.name and body.name.strip():
        first_name = body.name.strip().split(" ")[0]
    else:
        first_name = contact.get("firstNameLowerCase") or contact.get("firstName") or "Appointment"

    meeting_title = body.meeting_title or (agent.meeting_title if agent else tenant.meeting_title) or "Consultation"
    meeting_location = body.meeting_location or (agent.meeting_location if agent else tenant.meeting_location)
    title = f"{first_name} x {tenant.client_meta.business_name or 'Business'} - {meeting_title}"

    appointment = {
        "calendarId": cal_id,
        "locationId": tenant.tenant_id,
        "contactId": contact["id"],
        "startTime": body.start_time,
        "endTime": body.end_time,
        "title": title,
        "meetingLocationType": "default",
        "appointmentStatus": "new",
        "address": meeting_location,
        "ignoreDateRange": False,
        "toNotify": True,
        "ignoreFreeSlotValidation": False,
    }

    try:
        result = await crm.create_appointment(token["access_token"], appointment)
    except CRMConflictError:
        raise
    except CRMServiceError as e:
        text = str(e.body or "").lower()
        if any(marker in text for marker in CONFLICT_MARKERS):
            logger.warning(f"[{request_id}] Requested slot is not available: {e.body}")
            raise CRMConflictError(e.body)
        raise

    logger.info(f"[{request_id}] Appointment booked: {result.get('id')}")

    if body.call_sid:
        await get_call_record_writer().record_booking(body.call_sid, tenant.tenant_id)

    agent_id = agent.agent_id if agent else tenant.agent_id
    try:
        await get_metrics_service().increment_bookings(tenant.tenant_id, agent_id)
    except Exception as e:
        logger.error(f"[{request_id}] Failed to update metrics for booking: {e}")

    return {
        "requestId": request_id,
        "tenantId": tenant.tenant_id,
        "status": "success",
        "message": "Appointment booked successfully",
        "appointmentId": result.get("id"),
        "details": appointment,
        "contact": {"id": contact["id"], "name": first_name, "phone": phone}
    }


@router.get("/get-time", response_class=PlainTextResponse)
async def get_time(day: str = "0", week: str = "0", request_id: str = Depends(get_request_id)):
    """Today's date shifted by the given days and weeks, as YYYY-MM-DD"""
    try:
        days = int(day) + int(week) * 7
    except ValueError:
        raise ValidationError("Invalid parameters: day and week must be numbers", request_id=request_id)

    target = _today() + timedelta(days=days)
    logger.info(f"[{request_id}] Date requested with offset {days} days: {target.isoformat()}")
    return target.isoformat()
