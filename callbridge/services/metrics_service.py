"""
Agent Metrics Service
Monthly per-agent call metrics from internal call records, the voice
vendor's conversation history, and CRM calendar bookings.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, List, Any, Iterable, Tuple

from callbridge.core.logging import get_logger
from callbridge.core.exceptions import TenantNotFoundError, ValidationError
from callbridge.db import get_repository
from callbridge.db.base import TenantRepositoryInterface
from callbridge.models.call import CallDirection, CallStatus
from callbridge.models.metrics import AgentMetricsEntry, CallMetrics, MetricsSource
from callbridge.models.tenant import Tenant
from callbridge.services.crm.ghl_service import GHLService, get_ghl_service
from callbridge.services.voice.elevenlabs_service import ElevenLabsService, get_elevenlabs_service

logger = get_logger(__name__)

COMPARED_FIELDS = ("inbound_calls", "outbound_calls", "total_calls", "successful_bookings", "average_duration")
CANCELLED_APPOINTMENT_STATUSES = {"cancelled", "canceled", "invalid", "noshow"}


def period_key(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return f"{moment.year}-{moment.month:02d}"


def period_bounds(period: str) -> Tuple[datetime, datetime]:
    """[start, end) of a YYYY-MM period in UTC"""
    try:
        year, month = (int(part) for part in period.split("-"))
        start = datetime(year, month, 1, tzinfo=timezone.utc)
    except ValueError:
        raise ValidationError(f"Invalid period '{period}', expected YYYY-MM", field="period")
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) if month == 12 else datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def percent_change(start: float, end: float) -> int:
    if start == 0:
        return 100 if end > 0 else 0
    return round((end - start) / start * 100)


def _find_entry(tenant: Tenant, agent_id: str, period: str, source: MetricsSource) -> Optional[AgentMetricsEntry]:
    for entry in tenant.metrics_history:
        if entry.key() == (agent_id, period, source):
            return entry
    return None


def aggregate_conversations(conversations: Iterable[Dict[str, Any]]) -> CallMetrics:
    """Sum the vendor's conversation summaries into one metrics block"""
    metrics = CallMetrics()
    successful = 0
    for conversation in conversations:
        if not isinstance(conversation, dict):
            continue
        metrics.total_calls += 1
        direction = str(conversation.get("direction") or "").lower()
        if direction.startswith("in"):
            metrics.inbound_calls += 1
        else:
            metrics.outbound_calls += 1
        metrics.total_duration += int(conversation.get("call_duration_secs") or 0)
        if conversation.get("call_successful") == "success" or conversation.get("status") == "done":
            successful += 1

    if metrics.total_calls:
        metrics.average_duration = round(metrics.total_duration / metrics.total_calls)
        metrics.success_rate = round(successful / metrics.total_calls * 100, 2)
    return metrics


def aggregate_appointments_by_agent(tenant: Tenant, appointments: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """
    Count booked appointments per agent.

    The CRM does not say which agent booked an appointment, so every
    booking is credited to the primary agent.
    """
    booked = sum(
        1 for a in appointments
        if str(a.get("appointmentStatus") or a.get("status") or "").lower() not in CANCELLED_APPOINTMENT_STATUSES
    )
    return {tenant.agent_id: booked}


class MetricsService:
    """Service for reading and writing per-agent monthly metrics"""

    def __init__(
        self,
        repository: Optional[TenantRepositoryInterface] = None,
        voice: Optional[ElevenLabsService] = None,
        crm: Optional[GHLService] = None
    ):
        self._repository = repository
        self._voice = voice
        self._crm = crm

    @property
    def repository(self) -> TenantRepositoryInterface:
        return self._repository or get_repository()

    @property
    def voice(self) -> ElevenLabsService:
        return self._voice or get_elevenlabs_service()

    @property
    def crm(self) -> GHLService:
        return self._crm or get_ghl_service()

    async def _get_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.repository.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    # ==================== Writes ====================

    async def increment_call_metrics(
        self,
        tenant_id: str,
        agent_id: str,
        direction: CallDirection,
        duration: int = 0,
        booking_successful: bool = False,
        period: Optional[str] = None
    ) -> AgentMetricsEntry:
        """Add one call to the agent's internal metrics for the period (current month by default)"""
        period = period or period_key()
        result: Dict[str, AgentMetricsEntry] = {}

        def apply(tenant: Tenant) -> None:
            entry = _find_entry(tenant, agent_id, period, MetricsSource.INTERNAL)
            if entry is None:
                entry = AgentMetricsEntry(agent_id=agent_id, period=period, source=MetricsSource.INTERNAL)
                tenant.metrics_history.append(entry)

            m = entry.metrics
            m.total_calls += 1
            m.total_duration += duration
            if direction == CallDirection.INBOUND:
                m.inbound_calls += 1
            elif direction == CallDirection.OUTBOUND:
                m.outbound_calls += 1
            if booking_successful:
                m.successful_bookings += 1
            m.average_duration = round(m.total_duration / m.total_calls)
            entry.last_updated = datetime.now(timezone.utc)
            result["entry"] = entry

        if await self.repository.update_tenant(tenant_id, apply) is None:
            raise TenantNotFoundError(tenant_id)
        logger.info(f"Metrics updated for agent {agent_id}, direction: {direction.value}, booking: {booking_successful}")
        return result["entry"]

    async def increment_bookings(self, tenant_id: str, agent_id: str, period: Optional[str] = None) -> AgentMetricsEntry:
        """Count a booking made during a call that is already counted"""
        period = period or period_key()
        result: Dict[str, AgentMetricsEntry] = {}

        def apply(tenant: Tenant) -> None:
            entry = _find_entry(tenant, agent_id, period, MetricsSource.INTERNAL)
            if entry is None:
                entry = AgentMetricsEntry(agent_id=agent_id, period=period, source=MetricsSource.INTERNAL)
                tenant.metrics_history.append(entry)
            entry.metrics.successful_bookings += 1
            entry.last_updated = datetime.now(timezone.utc)
            result["entry"] = entry

        if await self.repository.update_tenant(tenant_id, apply) is None:
            raise TenantNotFoundError(tenant_id)
        logger.info(f"Booking counted for agent {agent_id} in {period}")
        return result["entry"]

    async def upsert_source_metrics(
        self,
        tenant_id: str,
        agent_id: str,
        period: str,
        source: MetricsSource,
        metrics: CallMetrics,
        note: Optional[str] = None
    ) -> AgentMetricsEntry:
        """Replace the metrics block for one (agent, period, source)"""
        if source == MetricsSource.COMBINED:
            raise ValidationError("Combined metrics are derived and cannot be stored", field="source")

        entry = AgentMetricsEntry(agent_id=agent_id, period=period, source=source, metrics=metrics, sync_note=note)

        def apply(tenant: Tenant) -> None:
            tenant.metrics_history = [m for m in tenant.metrics_history if m.key() != entry.key()]
            tenant.metrics_history.append(entry)

        if await self.repository.update_tenant(tenant_id, apply) is None:
            raise TenantNotFoundError(tenant_id)
        return entry

    async def recalculate_from_history(self, tenant_id: str, period: str) -> List[AgentMetricsEntry]:
        """Rebuild internal metrics for a period from the call history"""
        start, end = period_bounds(period)
        tenant = await self._get_tenant(tenant_id)

        per_agent: Dict[str, CallMetrics] = {}
        for call in tenant.call_history:
            started = call.call_data.start_time
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            if not (start <= started < end):
                continue
            agent_id = call.call_data.agent_id or tenant.agent_id
            m = per_agent.setdefault(agent_id, CallMetrics())
            m.total_calls += 1
            m.total_duration += call.call_data.duration
            if call.call_data.direction == CallDirection.INBOUND:
                m.inbound_calls += 1
            else:
                m.outbound_calls += 1
            if call.call_data.is_booking_successful or call.call_data.status == CallStatus.BOOKED_APPOINTMENT:
                m.successful_bookings += 1

        entries = []
        for agent_id, m in per_agent.items():
            m.average_duration = round(m.total_duration / m.total_calls)
            entries.append(await self.upsert_source_metrics(
                tenant_id, agent_id, period, MetricsSource.INTERNAL, m, note="recalculated from call history"
            ))
        logger.info(f"Recalculated {len(entries)} metrics entries for tenant {tenant_id}, period {period}")
        return entries

    async def sync_voice_metrics(self, tenant_id: str, period: str) -> List[AgentMetricsEntry]:
        """Pull each agent's conversations for the period from the voice vendor"""
        start, end = period_bounds(period)
        tenant = await self._get_tenant(tenant_id)

        entries = []
        for agent in tenant.get_all_agents():
            conversations = await self.voice.list_conversations(agent.agent_id, start, end)
            metrics = aggregate_conversations(conversations)
            entries.append(await self.upsert_source_metrics(
                tenant_id, agent.agent_id, period, MetricsSource.ELEVENLABS, metrics,
                note=f"synced {len(conversations)} conversation(s)"
            ))
        return entries

    async def sync_crm_appointments(self, tenant_id: str, period: str) -> List[AgentMetricsEntry]:
        """Pull booked appointments for the period from the CRM calendar"""
        start, end = period_bounds(period)
        tenant = await self._get_tenant(tenant_id)
        if not tenant.cal_id:
            raise ValidationError("Tenant has no calendar configured", field="cal_id")

        token = await self.crm.ensure_valid_access_token(tenant_id)
        events = await self.crm.list_calendar_events(
            token["access_token"],
            tenant_id,
            tenant.cal_id,
            int(start.timestamp() * 1000),
            int(end.timestamp() * 1000)
        )

        entries = []
        for agent_id, booked in aggregate_appointments_by_agent(tenant, events).items():
            metrics = CallMetrics(successful_appointments=booked)
            entries.append(await self.upsert_source_metrics(
                tenant_id, agent_id, period, MetricsSource.GHL, metrics,
                note="bookings credited to primary agent"
            ))
        return entries

    # ==================== Reads ====================

    async def get_agent_metrics(
        self,
        tenant_id: str,
        agent_id: str,
        period: str,
        source: MetricsSource = MetricsSource.INTERNAL
    ) -> Optional[AgentMetricsEntry]:
        tenant = await self._get_tenant(tenant_id)
        return _find_entry(tenant, agent_id, period, source)

    async def get_all_agent_metrics(
        self,
        tenant_id: str,
        period: str,
        source: MetricsSource = MetricsSource.INTERNAL
    ) -> List[Dict[str, Any]]:
        """Metrics for every agent of the tenant, zero-filled where nothing was recorded"""
        period_bounds(period)
        tenant = await self._get_tenant(tenant_id)
        if source == MetricsSource.COMBINED:
            combined = self._combine(tenant, period)
        results = []
        for agent in tenant.get_all_agents():
            if source == MetricsSource.COMBINED:
                metrics = combined[agent.agent_id]
            else:
                entry = _find_entry(tenant, agent.agent_id, period, source)
                metrics = entry.metrics if entry else CallMetrics()
            results.append({
                "agent_id": agent.agent_id,
                "agent_name": agent.agent_name,
                "twilio_phone_number": agent.twilio_phone_number,
                "is_primary": agent.is_primary,
                "period": period,
                "source": source.value,
                "metrics": metrics.model_dump(),
            })
        return results

    async def compare(
        self,
        tenant_id: str,
        agent_id: str,
        start_period: str,
        end_period: str
    ) -> Dict[str, Any]:
        period_bounds(start_period)
        period_bounds(end_period)
        tenant = await self._get_tenant(tenant_id)
        start_entry = _find_entry(tenant, agent_id, start_period, MetricsSource.INTERNAL)
        end_entry = _find_entry(tenant, agent_id, end_period, MetricsSource.INTERNAL)
        start = start_entry.metrics if start_entry else CallMetrics()
        end = end_entry.metrics if end_entry else CallMetrics()
        return {
            "agent_id": agent_id,
            "start_period": start_period,
            "end_period": end_period,
            "start_metrics": start.model_dump(),
            "end_metrics": end.model_dump(),
            "changes": {f: percent_change(getattr(start, f), getattr(end, f)) for f in COMPARED_FIELDS},
        }

    def _combine(self, tenant: Tenant, period: str) -> Dict[str, CallMetrics]:
        combined = {}
        for agent in tenant.get_all_agents():
            internal = _find_entry(tenant, agent.agent_id, period, MetricsSource.INTERNAL)
            voice = _find_entry(tenant, agent.agent_id, period, MetricsSource.ELEVENLABS)
            crm = _find_entry(tenant, agent.agent_id, period, MetricsSource.GHL)
            i = internal.metrics if internal else CallMetrics()
            v = voice.metrics if voice else CallMetrics()
            c = crm.metrics if crm else CallMetrics()

            m = CallMetrics(
                inbound_calls=i.inbound_calls + v.inbound_calls,
                outbound_calls=i.outbound_calls + v.outbound_calls,
                total_calls=i.total_calls + v.total_calls,
                successful_bookings=i.successful_bookings + c.successful_appointments,
                total_duration=i.total_duration + v.total_duration,
            )
            if m.total_calls:
                m.average_duration = round(m.total_duration / m.total_calls)
            combined[agent.agent_id] = m
        return combined

    async def combined_report(self, tenant_id: str, period: str) -> Dict[str, Any]:
        """Per-agent view of every source plus the derived combined block"""
        period_bounds(period)
        tenant = await self._get_tenant(tenant_id)
        combined = self._combine(tenant, period)
        report = {}
        for agent in tenant.get_all_agents():
            sources: Dict[str, Any] = {}
            for source in (MetricsSource.INTERNAL, MetricsSource.ELEVENLABS, MetricsSource.GHL):
                entry = _find_entry(tenant, agent.agent_id, period, source)
                sources[source.value] = entry.model_dump(mode="json") if entry else None
            sources[MetricsSource.COMBINED.value] = combined[agent.agent_id].model_dump()
            report[agent.agent_id] = {"agent_id": agent.agent_id, "period": period, "sources": sources}
        return {"success": True, "tenant_id": tenant_id, "period": period, "combined_metrics": report}


# Singleton
_metrics_service: Optional[MetricsService] = None


def get_metrics_service() -> MetricsService:
    """Get or create metrics service instance"""
    global _metrics_service
    if _metrics_service is None:
        _metrics_service = MetricsService()
    return _metrics_service
