"""
Audio Relay
Bridges one Twilio media stream to one ElevenLabs conversation socket for
the lifetime of a call.

Carrier audio that arrives while the vendor socket is still being set up
is queued and flushed in arrival order before any later frame is
forwarded. Vendor audio that arrives before the carrier stream sid is
known has nowhere to go and is dropped.
"""

import asyncio
import base64
import binascii
import json
from collections import deque
from typing import Any, AsyncIterable, Awaitable, Callable, Deque, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from callbridge.core.config import settings
from callbridge.core.exceptions import InvalidTransitionError, VoiceServiceError
from callbridge.core.logging import get_logger
from callbridge.db import get_repository
from callbridge.db.base import TenantRepositoryInterface
from callbridge.models.call import CallDirection, CallStatus
from callbridge.models.tenant import Tenant
from callbridge.services.call_records import CallRecordWriter, get_call_record_writer
from callbridge.services.crm.ghl_service import GHLService, get_ghl_service
from callbridge.services.metrics_service import MetricsService, get_metrics_service
from callbridge.services.relay.state import RelayEvent, RelayState, transition
from callbridge.services.session_store import SessionState, SessionStore, get_session_store
from callbridge.services.tool_dispatcher import (
    TRANSFER_TOOL,
    ToolCallDispatcher,
    ToolInvocation,
    build_tool_response,
    get_tool_dispatcher,
    parse_tool_invocation
)
from callbridge.services.voice.elevenlabs_service import (
    ElevenLabsService,
    build_initiation_message,
    get_elevenlabs_service
)

logger = get_logger(__name__)

# Stream parameters passed straight through as conversation variables
PARAMETER_VARIABLES = ("full_name", "business_name", "city", "job_title", "email", "phone")

VendorConnect = Callable[[str], Awaitable[Any]]


def _section(message: Dict[str, Any], key: str) -> Dict[str, Any]:
    """Nested object of a frame, or {} when it is missing or not an object"""
    value = message.get(key)
    return value if isinstance(value, dict) else {}


class AudioRelay:
    """
    Per-call relay between a carrier socket and a vendor socket.

    The carrier socket must provide send_text() and close(); the vendor
    connection must provide send(), close() and async iteration over
    incoming messages, as a websockets client connection does.
    """

    def __init__(
        self,
        carrier: Any,
        direction: CallDirection = CallDirection.INBOUND,
        agent_id: Optional[str] = None,
        sessions: Optional[SessionStore] = None,
        repository: Optional[TenantRepositoryInterface] = None,
        writer: Optional[CallRecordWriter] = None,
        dispatcher: Optional[ToolCallDispatcher] = None,
        voice: Optional[ElevenLabsService] = None,
        crm: Optional[GHLService] = None,
        metrics: Optional[MetricsService] = None,
        vendor_connect: Optional[VendorConnect] = None
    ):
        self.carrier = carrier
        self.direction = direction
        self.requested_agent_id = agent_id

        self.sessions = sessions or get_session_store()
        self.repository = repository or get_repository()
        self.writer = writer or get_call_record_writer()
        self.dispatcher = dispatcher or get_tool_dispatcher()
        self.voice = voice or get_elevenlabs_service()
        self.crm = crm or get_ghl_service()
        self.metrics = metrics or get_metrics_service()
        self.vendor_connect = vendor_connect or websockets.connect

        self.state = RelayState.AWAITING_STREAM_START
        self.call_sid: Optional[str] = None
        self.stream_sid: Optional[str] = None
        self.custom_parameters: Dict[str, Any] = {}
        self.tenant: Optional[Tenant] = None
        self.session: Optional[SessionState] = None
        self.transferred = False

        self.vendor: Optional[Any] = None
        self.pending: Deque[Dict[str, Any]] = deque()
        self._vendor_task: Optional[asyncio.Task] = None
        self._tool_tasks: Set[asyncio.Task] = set()
        self._teardown_started = False

    # ==================== State ====================

    def _apply(self, event: RelayEvent) -> bool:
        try:
            self.state = transition(self.state, event)
            return True
        except InvalidTransitionError:
            logger.warning(f"[{self.call_sid}] Rejected {event.value} in state {self.state.value}")
            return False

    async def _sync_session(self) -> None:
        if self.session is None:
            return
        stored = await self.sessions.get(self.session.call_sid)
        if stored is not None and stored.transferred:
            self.transferred = True
        self.session.status = self.state.value
        self.session.transferred = self.transferred
        await self.sessions.put(self.session.call_sid, self.session)

    # ==================== Carrier side ====================

    async def run(self, messages: AsyncIterable[str]) -> None:
        """Consume carrier messages until the stream stops or the socket closes"""
        try:
            async for raw in messages:
                await self.handle_carrier_message(raw)
                if self.state in (RelayState.CLOSING, RelayState.CLOSED):
                    break
        except Exception as e:
            logger.error(f"[{self.call_sid}] Carrier socket error: {e}")
        finally:
            await self.close(RelayEvent.CARRIER_CLOSED)

    async def handle_carrier_message(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            message = None
        if not isinstance(message, dict):
            logger.warning(f"[{self.call_sid}] Dropping undecodable carrier frame")
            return

        event = message.get("event")
        if event == "start":
            await self._on_start(_section(message, "start"))
        elif event == "media":
            await self._on_media(_section(message, "media"))
        elif event == "stop":
            logger.info(f"[Twilio] Stream {self.stream_sid} ended")
            await self.close(RelayEvent.STOP)
        elif event in ("connected", "mark", "dtmf"):
            logger.debug(f"[Twilio] {event} event")
        else:
            logger.info(f"[Twilio] Unhandled event: {event}")

    async def _on_start(self, start: Dict[str, Any]) -> None:
        if not self._apply(RelayEvent.STREAM_START):
            return

        self.stream_sid = start.get("streamSid")
        self.call_sid = start.get("callSid")
        self.custom_parameters = _section(start, "customParameters")
        logger.info(f"[Twilio] Stream started - StreamSid: {self.stream_sid}, CallSid: {self.call_sid}")

        if self.custom_parameters.get("direction") == CallDirection.OUTBOUND.value:
            self.direction = CallDirection.OUTBOUND

        tenant_id = await self._resolve_tenant_id()
        if tenant_id:
            self.tenant = await self.repository.get_tenant(tenant_id)

        self.session = SessionState(
            call_sid=self.call_sid or "",
            stream_sid=self.stream_sid,
            tenant_id=self.tenant.tenant_id if self.tenant else None,
            agent_id=self._resolve_agent_id(),
            direction=self.direction.value,
        )
        await self._sync_session()

        if self.tenant and self.call_sid:
            # Calls whose webhook was missed are discovered here
            await self.writer.record_call_start(
                self.tenant.tenant_id,
                self.call_sid,
                self.direction,
                phone=self.custom_parameters.get("caller_number") or self.custom_parameters.get("phone"),
                from_number=self.tenant.twilio_phone_number,
                agent_id=self.session.agent_id,
                request_id=self.custom_parameters.get("requestId"),
            )

        self._vendor_task = asyncio.create_task(self._connect_vendor())

    async def _on_media(self, media: Dict[str, Any]) -> None:
        if not self._apply(RelayEvent.CARRIER_MEDIA):
            return

        payload = media.get("payload")
        if not payload:
            return
        try:
            audio = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError, TypeError):
            logger.warning(f"[{self.call_sid}] Dropping media frame with invalid base64 payload")
            return

        chunk = {"user_audio_chunk": base64.b64encode(audio).decode("ascii")}

        if self.state == RelayState.AWAITING_VENDOR_READY:
            self.pending.append(chunk)
        elif self.vendor is not None:
            await self._send_vendor(chunk)

    async def _send_carrier(self, message: Dict[str, Any]) -> None:
        try:
            await self.carrier.send_text(json.dumps(message))
        except Exception as e:
            logger.warning(f"[{self.call_sid}] Failed to send to carrier: {e}")

    # ==================== Vendor side ====================

    def _resolve_agent_id(self) -> Optional[str]:
        candidates = [
            self.custom_parameters.get("agent_id"),
            self.custom_parameters.get("agentId"),
            self.requested_agent_id,
            self.tenant.agent_id if self.tenant else None,
        ]
        candidates.extend(settings.default_agent_ids[:1])
        return next((c for c in candidates if c), None)

    async def _resolve_tenant_id(self) -> Optional[str]:
        tenant_id = self.custom_parameters.get("tenant_id")
        if tenant_id:
            return tenant_id
        if not self.call_sid:
            return None
        existing = await self.sessions.get(self.call_sid)
        if existing and existing.tenant_id:
            return existing.tenant_id
        return await self.repository.find_tenant_id_for_call(self.call_sid)

    async def _build_dynamic_variables(self) -> Dict[str, Any]:
        params = self.custom_parameters
        variables: Dict[str, Any] = {k: params[k] for k in PARAMETER_VARIABLES if params.get(k)}

        if self.call_sid:
            variables["call_sid"] = self.call_sid
        if params.get("caller_number"):
            variables["caller_number"] = params["caller_number"]

        if self.tenant is None:
            return variables

        variables["client_id"] = self.tenant.tenant_id
        if self.tenant.client_meta.business_name:
            variables.setdefault("business_name", self.tenant.client_meta.business_name)

        caller = params.get("caller_number")
        if self.direction == CallDirection.INBOUND and caller and self.tenant.has_crm_integration:
            try:
                token = await self.crm.ensure_valid_access_token(self.tenant.tenant_id)
                contact = await self.crm.find_contact_by_phone(
                    token["access_token"], caller, self.tenant.tenant_id
                )
            except Exception as e:
                logger.warning(f"[{self.call_sid}] CRM personalization unavailable: {e}")
                contact = None
            if contact:
                name = f"{contact.get('firstName') or ''} {contact.get('lastName') or ''}".strip()
                if name:
                    variables.setdefault("full_name", name)
                for key, field in (("email", "email"), ("city", "city"), ("job_title", "title")):
                    if contact.get(field):
                        variables.setdefault(key, contact[field])

        return variables

    async def _connect_vendor(self) -> None:
        try:
            agent_id = self._resolve_agent_id()
            if not agent_id:
                raise VoiceServiceError("No agent ID available")

            logger.info(f"[ElevenLabs] Setting up connection with agent ID: {agent_id}")
            signed_url = await self.voice.get_signed_url(agent_id)
            self.vendor = await self.vendor_connect(signed_url)

            initiation = build_initiation_message(
                await self._build_dynamic_variables(),
                self.custom_parameters.get("first_message")
            )
            await self.vendor.send(json.dumps(initiation))
            logger.info(f"[ElevenLabs] Connected and configured for call {self.call_sid}")

            # Frames keep arriving while we flush; the transition happens
            # only once the queue is empty, with no await in between.
            while self.pending:
                await self.vendor.send(json.dumps(self.pending.popleft()))

        except asyncio.CancelledError:
            await self._close_vendor()
            raise
        except Exception as e:
            logger.error(f"[ElevenLabs] Setup failed for call {self.call_sid}, continuing without AI: {e}")
            await self._close_vendor()
            self.pending.clear()
            if self._apply(RelayEvent.VENDOR_FAILED):
                await self._sync_session()
            return

        if not self._apply(RelayEvent.VENDOR_READY):
            await self._close_vendor()
            return
        await self._sync_session()
        await self._vendor_loop()

    async def _vendor_loop(self) -> None:
        try:
            async for raw in self.vendor:
                await self.handle_vendor_message(raw)
        except ConnectionClosed as e:
            logger.info(f"[ElevenLabs] Disconnected: {e}")
        except Exception as e:
            logger.error(f"[ElevenLabs] Socket error on call {self.call_sid}: {e}")
        finally:
            await self.close(RelayEvent.VENDOR_CLOSED)

    async def handle_vendor_message(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            message = None
        if not isinstance(message, dict):
            logger.warning(f"[{self.call_sid}] Dropping undecodable vendor frame")
            return

        if not self._apply(RelayEvent.VENDOR_MESSAGE):
            return

        message_type = message.get("type")

        if message_type == "audio":
            payload = _section(message, "audio_event").get("audio_base_64")
            if not payload or not isinstance(payload, str):
                return
            if self.stream_sid:
                await self._send_carrier({
                    "event": "media",
                    "streamSid": self.stream_sid,
                    "media": {"payload": payload}
                })
            else:
                logger.info("[ElevenLabs] Have audio but no StreamSid yet")

        elif message_type == "interruption":
            if self.stream_sid:
                await self._send_carrier({"event": "clear", "streamSid": self.stream_sid})

        elif message_type == "ping":
            if self.call_sid:
                await self.sessions.touch(self.call_sid)
            event_id = _section(message, "ping_event").get("event_id")
            if event_id:
                await self._send_vendor({"type": "pong", "event_id": event_id})

        elif message_type == "conversation_initiation_metadata":
            metadata = _section(message, "conversation_initiation_metadata_event")
            await self._record_conversation_id(metadata.get("conversation_id"))

        elif message_type == "agent_response":
            logger.info(f"[ElevenLabs] Agent response: {_section(message, 'agent_response_event').get('agent_response')}")

        elif message_type == "user_transcript":
            logger.info(f"[ElevenLabs] User transcript: {_section(message, 'user_transcription_event').get('user_transcript')}")

        else:
            invocation = parse_tool_invocation(message)
            if invocation is None:
                logger.debug(f"[ElevenLabs] Unhandled message type: {message_type}")
                return
            task = asyncio.create_task(self._run_tool(invocation))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, invocation: ToolInvocation) -> None:
        result = await self.dispatcher.dispatch(invocation, self.call_sid)
        if result.get("success") and invocation.tool_name == TRANSFER_TOOL:
            self.transferred = True
        await self._send_vendor(build_tool_response(invocation, result))

    async def drain_tool_calls(self) -> None:
        """Wait for in-flight tool calls to finish"""
        if self._tool_tasks:
            await asyncio.gather(*list(self._tool_tasks), return_exceptions=True)

    async def _record_conversation_id(self, conversation_id: Optional[str]) -> None:
        if not conversation_id:
            return
        logger.info(f"[ElevenLabs] Conversation {conversation_id} started for call {self.call_sid}")
        if self.session is not None:
            self.session.conversation_id = conversation_id
            await self._sync_session()
        if self.call_sid:
            try:
                await self.writer.record_conversation_id(
                    self.call_sid, conversation_id, self.session.tenant_id if self.session else None
                )
            except Exception as e:
                logger.error(f"[{self.call_sid}] Failed to store conversation id: {e}")

    async def _send_vendor(self, message: Dict[str, Any]) -> None:
        if self.vendor is None:
            return
        try:
            await self.vendor.send(json.dumps(message))
        except Exception as e:
            logger.warning(f"[{self.call_sid}] Failed to send to vendor: {e}")

    async def _close_vendor(self) -> None:
        vendor, self.vendor = self.vendor, None
        if vendor is None:
            return
        try:
            await vendor.close()
        except Exception as e:
            logger.debug(f"[{self.call_sid}] Vendor close: {e}")

    # ==================== Teardown ====================

    async def close(self, event: RelayEvent) -> None:
        """Tear down both sockets and persist the call's terminal state. Safe to call repeatedly."""
        if self.state == RelayState.CLOSED or not self._apply(event):
            return
        if self._teardown_started:
            return
        self._teardown_started = True
        logger.info(f"[{self.call_sid}] Closing relay on {event.value}")

        await self._close_vendor()
        if self._vendor_task and self._vendor_task is not asyncio.current_task() and not self._vendor_task.done():
            self._vendor_task.cancel()

        if event != RelayEvent.CARRIER_CLOSED:
            try:
                await self.carrier.close()
            except Exception as e:
                logger.debug(f"[{self.call_sid}] Carrier close: {e}")

        if self.call_sid:
            await self._finalize_record()
            await self.sessions.remove(self.call_sid)

        self._apply(RelayEvent.TEARDOWN_COMPLETE)

    async def _finalize_record(self) -> None:
        stored = await self.sessions.get(self.call_sid)
        transferred = self.transferred or bool(stored and stored.transferred)
        status = CallStatus.BOOKED_APPOINTMENT if transferred else CallStatus.HANG_UP
        try:
            entry = await self.writer.record_call_end(
                self.call_sid,
                status,
                tenant_id=self.session.tenant_id if self.session else None
            )
        except Exception as e:
            logger.error(f"[{self.call_sid}] Failed to record call end: {e}")
            return

        if entry is None or self.session is None or not self.session.tenant_id:
            return
        agent_id = entry.call_data.agent_id or self.session.agent_id
        if not agent_id:
            return
        try:
            await self.metrics.increment_call_metrics(
                self.session.tenant_id,
                agent_id,
                entry.call_data.direction,
                duration=entry.call_data.duration
            )
        except Exception as e:
            logger.error(f"[{self.call_sid}] Failed to update call metrics: {e}")
