"""
Call Data Models
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallStatus(str, Enum):
    """Outcome of a call as recorded in the tenant's history"""
    BOOKED_APPOINTMENT = "booked_appointment"
    FOLLOW_UP = "follow_up"
    HANG_UP = "hang_up"
    DNC = "dnc"
    NO_CALL_MATCH = "no_call_match"


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallSentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class CallData(BaseModel):
    """Telephony facts about a call"""
    call_sid: str
    request_id: Optional[str] = None
    phone: Optional[str] = None
    from_number: Optional[str] = None
    agent_id: Optional[str] = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration: int = 0
    call_count: int = 1
    status: CallStatus = CallStatus.FOLLOW_UP
    carrier_status: Optional[str] = None
    recording_url: Optional[str] = None
    direction: CallDirection = CallDirection.INBOUND
    is_booking_successful: bool = False
    conversation_id: Optional[str] = None


class CallDetails(BaseModel):
    """Free-text outcome of a call"""
    call_summary: str = ""
    call_transcript: str = ""
    call_sentiment: Optional[CallSentiment] = None
    next_action: Optional[str] = None
    next_action_date: Optional[datetime] = None
    agent_notes: str = ""


class CallHistoryEntry(BaseModel):
    """One entry per telephony call in a tenant's history"""
    call_id: str
    call_data: CallData
    call_details: CallDetails = Field(default_factory=CallDetails)

    @classmethod
    def start(
        cls,
        call_sid: str,
        direction: CallDirection,
        phone: Optional[str] = None,
        from_number: Optional[str] = None,
        agent_id: Optional[str] = None,
        request_id: Optional[str] = None,
        summary: str = ""
    ) -> "CallHistoryEntry":
        """Build the entry written when a call starts"""
        return cls(
            call_id=f"call_{call_sid}",
            call_data=CallData(
                call_sid=call_sid,
                request_id=request_id,
                phone=phone,
                from_number=from_number,
                agent_id=agent_id,
                direction=direction,
                status=CallStatus.FOLLOW_UP,
            ),
            call_details=CallDetails(call_summary=summary),
        )


class MakeCallRequest(BaseModel):
    """Request to place an outbound call for a tenant"""
    phone: Optional[str] = Field(default=None, description="Destination in E.164 format")
    agent_id: Optional[str] = Field(default=None, description="Agent to call from; primary when omitted")


class TransferCallRequest(BaseModel):
    """Manual transfer of a live call to a human"""
    call_sid: str = Field(..., alias="callSid")
    agent_number: Optional[str] = Field(default=None, alias="agentNumber")

    model_config = {"populate_by_name": True}
