"""
Twilio Telephony Service
Handles call control and TwiML generation using the Twilio API
"""

import asyncio
from typing import Optional, Dict, Any, Callable
from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from twilio.twiml.voice_response import VoiceResponse, Connect, Stream, Dial

from callbridge.core.config import settings
from callbridge.core.logging import get_logger

logger = get_logger(__name__)

HOLD_MUSIC_URL = "http://twimlets.com/holdmusic?Bucket=com.twilio.music.classical"
STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


def _call_summary(call: Any, *fields: str) -> Dict[str, Any]:
    summary = {"success": True, "call_sid": call.sid, "status": call.status}
    for field in fields:
        summary["from" if field == "from_" else field] = getattr(call, field, None)
    return summary


class TwilioService:
    """
    Service for interacting with Twilio API

    REST methods never raise: they return {"success": False, "error", "code"?}
    so callers can hand carrier failures back to the voice agent as data.
    The SDK client is synchronous, so every request runs in a worker thread.
    """

    def __init__(self):
        self.account_sid = settings.twilio_account_sid
        self.auth_token = settings.twilio_auth_token

        self.client = Client(self.account_sid, self.auth_token)

    async def _request(self, action: str, fn: Callable[..., Any], *fields: str, **params) -> Dict[str, Any]:
        try:
            call = await asyncio.to_thread(fn, **params)
        except TwilioRestException as e:
            logger.error(f"Twilio API error while trying to {action}: {e.code} - {e.msg}")
            return {"success": False, "error": e.msg, "code": e.code}
        except Exception as e:
            logger.error(f"Failed to {action}: {e}")
            return {"success": False, "error": str(e)}
        return _call_summary(call, *fields)

    async def create_call(
        self,
        to_number: str,
        from_number: str,
        twiml_url: Optional[str] = None,
        twiml: Optional[str] = None,
        status_callback_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Place an outbound call

        Args:
            to_number: Phone number to call (E.164 format)
            from_number: Twilio number the call comes from
            twiml_url: URL to fetch TwiML instructions
            twiml: TwiML string, used instead of twiml_url
            status_callback_url: URL for call status updates

        Returns:
            Call information including SID
        """
        logger.info(f"Creating call to {to_number} from {from_number}")

        params: Dict[str, Any] = {"to": to_number, "from_": from_number}
        if twiml:
            params["twiml"] = twiml
        elif twiml_url:
            params["url"] = twiml_url
        if status_callback_url:
            params.update(
                status_callback=status_callback_url,
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST"
            )

        result = await self._request("create call", self.client.calls.create, "to", "from_", **params)
        if result["success"]:
            logger.info(f"Call created successfully: {result['call_sid']}")
        return result

    async def get_call(self, call_sid: str) -> Dict[str, Any]:
        """Fetch a call's status, parties, direction and duration"""
        return await self._request(
            "fetch call", self.client.calls(call_sid).fetch,
            "to", "from_", "direction", "duration"
        )

    async def update_call(
        self,
        call_sid: str,
        twiml_url: Optional[str] = None,
        twiml: Optional[str] = None
    ) -> Dict[str, Any]:
        """Replace the instructions of an in-progress call"""
        params = {}
        if twiml_url:
            params["url"] = twiml_url
        if twiml:
            params["twiml"] = twiml
        return await self._request("update call", self.client.calls(call_sid).update, **params)

    def generate_stream_twiml(
        self,
        stream_url: str,
        parameters: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Generate TwiML that opens a bidirectional media stream

        Args:
            stream_url: wss:// URL of the media stream endpoint
            parameters: Custom parameters delivered with the stream's start event

        Returns:
            TwiML string
        """
        response = VoiceResponse()

        connect = Connect()
        stream = Stream(url=stream_url)
        for name, value in (parameters or {}).items():
            if value:
                stream.parameter(name=name, value=str(value))
        connect.append(stream)
        response.append(connect)

        return str(response)

    def generate_hangup_twiml(self, message: Optional[str] = None) -> str:
        """
        Generate TwiML to hang up a call

        Args:
            message: Optional message before hanging up

        Returns:
            TwiML string
        """
        response = VoiceResponse()

        if message:
            response.say(message)

        response.hangup()
        return str(response)

    def generate_hold_conference_twiml(
        self,
        conference_name: str,
        message: str = "Please hold while we connect you to an agent."
    ) -> str:
        """
        TwiML that parks the caller in a conference with hold music.
        The caller leaving does not end the conference.
        """
        response = VoiceResponse()
        response.say(message)

        dial = Dial()
        dial.conference(
            conference_name,
            start_conference_on_enter=False,
            end_conference_on_exit=False,
            wait_url=HOLD_MUSIC_URL
        )
        response.append(dial)

        return str(response)

    def generate_agent_conference_twiml(
        self,
        conference_name: str,
        message: str = "You are being connected to a caller who was speaking with our AI assistant."
    ) -> str:
        """TwiML for the human leg; it starts the conference and ends it on exit."""
        response = VoiceResponse()
        response.say(message)

        dial = Dial()
        dial.conference(
            conference_name,
            start_conference_on_enter=True,
            end_conference_on_exit=True,
            beep=False
        )
        response.append(dial)

        return str(response)


# Singleton
_twilio_service: Optional[TwilioService] = None


def get_twilio_service() -> TwilioService:
    """Get or create Twilio service instance"""
    global _twilio_service
    if _twilio_service is None:
        _twilio_service = TwilioService()
    return _twilio_service
