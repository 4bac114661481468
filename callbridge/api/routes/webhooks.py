"""
Carrier-facing webhook routes
Twilio calls these when a call arrives, when an outbound call is answered,
and as a call's status changes.
"""

import time
from typing import Optional
from fastapi import APIRouter, Request, Form
from fastapi.responses import Response

from callbridge.core.config import settings
from callbridge.core.logging import get_logger
from callbridge.models.call import CallDirection, TransferCallRequest
from callbridge.services.call_records import get_call_record_writer
from callbridge.services.telephony.twilio_service import get_twilio_service
from callbridge.services.tenant_service import get_tenant_service
from callbridge.services.tool_dispatcher import get_tool_dispatcher

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

APOLOGY_MESSAGE = "We're sorry, but we are unable to process your call at this time. Please try again later."

# Query parameters forwarded into the outbound stream's start event
OUTBOUND_STREAM_PARAMETERS = (
    "first_message", "full_name", "business_name", "city", "job_title",
    "email", "phone", "requestId", "tenant_id", "agent_id"
)


def _twiml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


async def _request_fields(request: Request) -> dict:
    """Twilio sends form bodies on POST and query strings on GET"""
    fields = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        fields.update({k: v for k, v in form.items() if isinstance(v, str)})
    return fields


@router.api_route("/incoming-call", methods=["GET", "POST"])
async def handle_incoming_call(request: Request):
    """
    Handle incoming calls from Twilio

    The called number identifies the tenant and agent. The answer is a
    media stream to the relay carrying the tenant and caller as stream
    parameters.
    """
    twilio = get_twilio_service()
    fields = await _request_fields(request)
    call_sid = fields.get("CallSid")
    caller = fields.get("From")
    called = fields.get("To")
    request_id = f"inbound_{int(time.time() * 1000)}"

    logger.info(f"[{request_id}] Incoming call {call_sid} from {caller} to {called}")

    try:
        match = await get_tenant_service().find_tenant_by_any_agent(phone=called) if called else None
        if match is None:
            logger.warning(f"[{request_id}] No tenant found for number {called}")
            return _twiml(twilio.generate_hangup_twiml(APOLOGY_MESSAGE))

        tenant, agent = match["tenant"], match["agent"]
        if call_sid:
            await get_call_record_writer().record_call_start(
                tenant.tenant_id,
                call_sid,
                CallDirection.INBOUND,
                phone=caller,
                from_number=called,
                agent_id=agent.agent_id,
                request_id=request_id,
                summary="Inbound call"
            )

        twiml = twilio.generate_stream_twiml(
            settings.media_stream_url,
            {
                "tenant_id": tenant.tenant_id,
                "agent_id": agent.agent_id,
                "caller_number": caller,
                "direction": CallDirection.INBOUND.value,
            }
        )
        logger.info(f"[{request_id}] Routing call {call_sid} to agent {agent.agent_id} ({match['found_by']})")
        return _twiml(twiml)

    except Exception as e:
        logger.error(f"[{request_id}] Error handling incoming call: {e}", exc_info=True)
        return _twiml(twilio.generate_hangup_twiml(APOLOGY_MESSAGE))


@router.api_route("/outbound-call-twiml", methods=["GET", "POST"])
async def outbound_call_twiml(request: Request):
    """
    TwiML for an answered outbound call

    Every known query parameter becomes a stream parameter, so the relay
    can personalize the conversation.
    """
    query = request.query_params
    parameters = {name: query.get(name) for name in OUTBOUND_STREAM_PARAMETERS if query.get(name)}
    parameters["direction"] = CallDirection.OUTBOUND.value

    logger.info(f"[{query.get('requestId', 'unknown')}] Generating outbound TwiML with {sorted(parameters)}")

    twiml = get_twilio_service().generate_stream_twiml(settings.outbound_media_stream_url, parameters)
    return _twiml(twiml)


@router.post("/call-status")
async def handle_call_status(
    request: Request,
    CallSid: Optional[str] = Form(None),
    CallStatus: Optional[str] = Form(None),
    CallDuration: Optional[str] = Form(None)
):
    """
    Handle call status updates from Twilio

    Records the carrier status; duration and end time are stored once the
    call is completed. Twilio always gets a 200.
    """
    request_id = request.query_params.get("requestId", "unknown")
    tenant_id = request.query_params.get("tenant_id")

    if not CallSid or not CallStatus:
        logger.warning(f"[{request_id}] Call status callback without CallSid or CallStatus")
        return {"success": False, "error": "Missing CallSid or CallStatus"}

    logger.info(f"[{request_id}] Call status update: {CallSid} -> {CallStatus}")

    try:
        duration = int(CallDuration) if CallDuration and CallDuration.isdigit() else None
        updated = await get_call_record_writer().record_carrier_status(
            CallSid,
            CallStatus,
            duration=duration,
            tenant_id=tenant_id
        )
        if updated is None:
            logger.warning(f"[{request_id}] Failed to update call status: Record not found")
        return {"success": True}

    except Exception as e:
        logger.error(f"[{request_id}] Error updating call status: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


@router.post("/transfer-call")
async def transfer_call(body: TransferCallRequest):
    """
    Transfer a live call to a human agent

    Uses the same conference hand-off the voice agent's transfer tool does.
    """
    logger.info(f"Manual transfer requested for call {body.call_sid}")
    return await get_tool_dispatcher().transfer_to_agent(body.call_sid, body.agent_number)
