"""
Tool-Call Dispatcher
Executes function calls requested by the voice agent mid-conversation and
builds the reply the agent expects.

The vendor emits tool calls in two shapes:

    {"type": "client_tool_call",
     "client_tool_call": {"tool_name": ..., "tool_call_id": ..., "parameters": {...}}}

    {"type": "tool_request",
     "tool_request": {"tool_name": ..., "event_id": ..., "params": {...}}}

Both are handled as the same invocation; the reply echoes whichever
correlation token the request carried.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from callbridge.core.logging import get_logger
from callbridge.db import get_repository
from callbridge.db.base import TenantRepositoryInterface
from callbridge.services.call_records import CallRecordWriter, get_call_record_writer
from callbridge.services.session_store import SessionStore, get_session_store
from callbridge.services.telephony.twilio_service import TwilioService, get_twilio_service

logger = get_logger(__name__)

TRANSFER_TOOL = "transfer_to_agent"
CLIENT_TOOL_CALL = "client_tool_call"
TOOL_REQUEST = "tool_request"


@dataclass
class ToolInvocation:
    variant: str
    tool_name: str
    correlation_id: Optional[str]
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def destination_number(self) -> Optional[str]:
        if self.variant == CLIENT_TOOL_CALL:
            return self.parameters.get("phone_number")
        return self.parameters.get("agent_number")


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_tool_invocation(message: Dict[str, Any]) -> Optional[ToolInvocation]:
    """Normalize either tool-call shape; None if the message is not a tool call"""
    message_type = message.get("type")
    if message_type == CLIENT_TOOL_CALL:
        body = _mapping(message.get(CLIENT_TOOL_CALL))
        return ToolInvocation(
            variant=CLIENT_TOOL_CALL,
            tool_name=body.get("tool_name", ""),
            correlation_id=body.get("tool_call_id"),
            parameters=_mapping(body.get("parameters")),
        )
    if message_type == TOOL_REQUEST:
        body = _mapping(message.get(TOOL_REQUEST))
        return ToolInvocation(
            variant=TOOL_REQUEST,
            tool_name=body.get("tool_name", ""),
            correlation_id=body.get("event_id"),
            parameters=_mapping(body.get("params")),
        )
    return None


def build_tool_response(invocation: ToolInvocation, result: Dict[str, Any]) -> Dict[str, Any]:
    """Reply envelope matching the variant of the request"""
    if invocation.variant == CLIENT_TOOL_CALL:
        return {
            "type": "client_tool_response",
            "tool_call_id": invocation.correlation_id,
            "data": result,
        }
    return {
        "type": "tool_response",
        "event_id": invocation.correlation_id,
        "tool_name": invocation.tool_name,
        "result": result,
    }


class ToolCallDispatcher:
    """Runs tool invocations. Failures come back as {"success": False, "error": ...}, never as exceptions."""

    def __init__(
        self,
        twilio: Optional[TwilioService] = None,
        repository: Optional[TenantRepositoryInterface] = None,
        writer: Optional[CallRecordWriter] = None,
        sessions: Optional[SessionStore] = None
    ):
        self._twilio = twilio
        self._repository = repository
        self._writer = writer
        self._sessions = sessions

    @property
    def twilio(self) -> TwilioService:
        return self._twilio or get_twilio_service()

    @property
    def repository(self) -> TenantRepositoryInterface:
        return self._repository or get_repository()

    @property
    def writer(self) -> CallRecordWriter:
        return self._writer or get_call_record_writer()

    @property
    def sessions(self) -> SessionStore:
        return self._sessions or get_session_store()

    async def dispatch(self, invocation: ToolInvocation, call_sid: Optional[str]) -> Dict[str, Any]:
        logger.info(f"Tool call {invocation.tool_name} ({invocation.variant}) for call {call_sid}")

        if invocation.tool_name != TRANSFER_TOOL:
            return {"success": False, "error": f"Unknown tool: {invocation.tool_name}"}
        if not call_sid:
            return {"success": False, "error": "No active call to transfer"}

        return await self.transfer_to_agent(call_sid, invocation.destination_number)

    async def transfer_to_agent(self, call_sid: str, agent_number: Optional[str] = None) -> Dict[str, Any]:
        """
        Move the caller into a hold conference and dial a human into it.

        The explicit agent_number wins; otherwise the tenant's contact phone
        is used. Nothing is dialed when neither is available.
        """
        try:
            tenant_id = await self._resolve_tenant_id(call_sid)
            tenant = await self.repository.get_tenant(tenant_id) if tenant_id else None
            if tenant is None:
                logger.warning(f"Transfer requested for unknown call {call_sid}")
                return {"success": False, "error": "Tenant not found for call"}

            transfer_number = agent_number or tenant.client_meta.phone
            if not transfer_number:
                logger.warning(f"No transfer number available for call {call_sid}")
                return {"success": False, "error": "No transfer number available"}

            call = await self.twilio.get_call(call_sid)
            if not call.get("success"):
                return {"success": False, "error": call.get("error", "Failed to fetch call")}

            conference_name = f"transfer_{call_sid}"

            held = await self.twilio.update_call(
                call_sid,
                twiml=self.twilio.generate_hold_conference_twiml(conference_name)
            )
            if not held.get("success"):
                return {"success": False, "error": held.get("error", "Failed to move caller to hold")}

            agent_leg = await self.twilio.create_call(
                to_number=transfer_number,
                from_number=call.get("from"),
                twiml=self.twilio.generate_agent_conference_twiml(conference_name)
            )
            if not agent_leg.get("success"):
                return {"success": False, "error": agent_leg.get("error", "Failed to call agent")}

            await self.writer.record_transfer(call_sid, tenant.tenant_id, transfer_number)
            await self._mark_session_transferred(call_sid)

            logger.info(f"Call {call_sid} transferred to {transfer_number} via {agent_leg['call_sid']}")
            return {
                "success": True,
                "agentCallSid": agent_leg["call_sid"],
                "transferNumber": transfer_number,
                "tenantId": tenant.tenant_id,
            }

        except Exception as e:
            logger.error(f"Transfer failed for call {call_sid}: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def _resolve_tenant_id(self, call_sid: str) -> Optional[str]:
        session = await self.sessions.get(call_sid)
        if session is not None and session.tenant_id:
            return session.tenant_id
        return await self.repository.find_tenant_id_for_call(call_sid)

    async def _mark_session_transferred(self, call_sid: str) -> None:
        session = await self.sessions.get(call_sid)
        if session is not None:
            session.transferred = True
            await self.sessions.put(call_sid, session)


# Singleton
_dispatcher: Optional[ToolCallDispatcher] = None


def get_tool_dispatcher() -> ToolCallDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = ToolCallDispatcher()
    return _dispatcher
