"""
Call Record Writer
Persists call lifecycle facts into the owning tenant's call history
"""

import math
from datetime import datetime, timezone
from typing import Optional, Callable

from callbridge.core.logging import get_logger
from callbridge.db import get_repository
from callbridge.db.base import TenantRepositoryInterface
from callbridge.models.call import (
    CallHistoryEntry,
    CallDirection,
    CallStatus,
    CallSentiment
)

logger = get_logger(__name__)


def compute_duration(start_time: datetime, end_time: datetime) -> int:
    """Whole seconds between start and end, floored, never negative"""
    if start_time.tzinfo is None:
        start_time = start_time.replace(tzinfo=timezone.utc)
    if end_time.tzinfo is None:
        end_time = end_time.replace(tzinfo=timezone.utc)
    return max(0, math.floor((end_time - start_time).total_seconds()))


class CallRecordWriter:
    """
    Appends history entries when calls start and sets terminal fields when
    they end. Terminal updates for a call that cannot be matched to a
    history entry are skipped, never turned into new entries.
    """

    def __init__(
        self,
        repository: Optional[TenantRepositoryInterface] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def repository(self) -> TenantRepositoryInterface:
        return self._repository or get_repository()

    async def resolve_tenant_id(self, call_sid: str, tenant_id: Optional[str] = None) -> Optional[str]:
        if tenant_id:
            return tenant_id
        return await self.repository.find_tenant_id_for_call(call_sid)

    async def record_call_start(
        self,
        tenant_id: str,
        call_sid: str,
        direction: CallDirection,
        phone: Optional[str] = None,
        from_number: Optional[str] = None,
        agent_id: Optional[str] = None,
        request_id: Optional[str] = None,
        summary: str = ""
    ) -> bool:
        """Append a follow-up entry for a new call. Returns False if it was already recorded."""
        entry = CallHistoryEntry.start(
            call_sid=call_sid,
            direction=direction,
            phone=phone,
            from_number=from_number,
            agent_id=agent_id,
            request_id=request_id,
            summary=summary,
        )
        entry.call_data.start_time = self._clock()

        appended = await self.repository.append_call(tenant_id, entry)
        if appended:
            logger.info(f"Recorded {direction.value} call {call_sid} for tenant {tenant_id}")
        else:
            logger.info(f"Call {call_sid} already recorded or tenant {tenant_id} missing")
        return appended

    async def record_call_end(
        self,
        call_sid: str,
        status: CallStatus,
        tenant_id: Optional[str] = None,
        ended_at: Optional[datetime] = None
    ) -> Optional[CallHistoryEntry]:
        """Set end time, floored duration and terminal status on an existing entry"""
        resolved = await self.resolve_tenant_id(call_sid, tenant_id)
        if not resolved:
            logger.info(f"No tenant correlated with call {call_sid}, skipping terminal update")
            return None

        entry = await self.repository.get_call(resolved, call_sid)
        if entry is None:
            logger.info(f"No history entry for call {call_sid} in tenant {resolved}, skipping")
            return None

        ended_at = ended_at or self._clock()
        updates = {
            "call_data.end_time": ended_at,
            "call_data.duration": compute_duration(entry.call_data.start_time, ended_at),
            "call_data.status": status,
        }
        updated = await self.repository.update_call(resolved, call_sid, updates)
        if updated:
            logger.info(f"Call {call_sid} ended with status {status.value} after {updates['call_data.duration']}s")
        return updated

    async def record_carrier_status(
        self,
        call_sid: str,
        carrier_status: str,
        duration: Optional[int] = None,
        tenant_id: Optional[str] = None
    ) -> Optional[CallHistoryEntry]:
        """Apply a carrier status callback; end time is only set once the call completed"""
        resolved = await self.resolve_tenant_id(call_sid, tenant_id)
        if not resolved:
            logger.info(f"No tenant correlated with call {call_sid}, skipping status update")
            return None

        updates = {"call_data.carrier_status": carrier_status}
        if duration is not None:
            updates["call_data.duration"] = duration
        if carrier_status == "completed":
            updates["call_data.end_time"] = self._clock()

        updated = await self.repository.update_call(resolved, call_sid, updates)
        if updated is None:
            logger.warning(f"Failed to update call status for {call_sid}: record not found")
        return updated

    async def record_transfer(
        self,
        call_sid: str,
        tenant_id: str,
        transfer_number: str
    ) -> Optional[CallHistoryEntry]:
        updates = {
            "call_data.status": CallStatus.BOOKED_APPOINTMENT,
            "call_details.call_summary": f"Call transferred to agent at {transfer_number}",
            "call_details.call_sentiment": CallSentiment.POSITIVE,
            "call_details.next_action": "agent_followup",
        }
        updated = await self.repository.update_call(tenant_id, call_sid, updates)
        if updated is None:
            logger.info(f"No history entry for transferred call {call_sid}, skipping")
        return updated

    async def record_booking(self, call_sid: str, tenant_id: str) -> Optional[CallHistoryEntry]:
        updates = {
            "call_data.status": CallStatus.BOOKED_APPOINTMENT,
            "call_data.is_booking_successful": True,
        }
        return await self.repository.update_call(tenant_id, call_sid, updates)

    async def record_conversation_id(
        self,
        call_sid: str,
        conversation_id: str,
        tenant_id: Optional[str] = None
    ) -> Optional[CallHistoryEntry]:
        resolved = await self.resolve_tenant_id(call_sid, tenant_id)
        if not resolved:
            return None
        return await self.repository.update_call(
            resolved, call_sid, {"call_data.conversation_id": conversation_id}
        )


# Singleton
_call_record_writer: Optional[CallRecordWriter] = None


def get_call_record_writer() -> CallRecordWriter:
    """Get or create call record writer instance"""
    global _call_record_writer
    if _call_record_writer is None:
        _call_record_writer = CallRecordWriter()
    return _call_record_writer
