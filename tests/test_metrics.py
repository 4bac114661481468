"""
Tests for per-agent metrics
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from callbridge.core.exceptions import ValidationError
from callbridge.models.call import CallDirection, CallStatus
from callbridge.models.metrics import CallMetrics, MetricsSource
from callbridge.services.call_records import CallRecordWriter
from callbridge.services.metrics_service import (
    MetricsService,
    aggregate_appointments_by_agent,
    aggregate_conversations,
    percent_change,
    period_bounds,
    period_key
)

from tests.conftest import make_tenant


class TestPeriods:
    """Tests for period helpers"""

    def test_period_key(self):
        assert period_key(datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc)) == "2026-03"

    def test_period_bounds_wrap_year(self):
        start, end = period_bounds("2025-12")
        assert start == datetime(2025, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_invalid_period(self):
        with pytest.raises(ValidationError):
            period_bounds("March")

    def test_percent_change(self):
        assert percent_change(0, 0) == 0
        assert percent_change(0, 5) == 100
        assert percent_change(4, 5) == 25
        assert percent_change(3, 1) == -67


class TestAggregation:
    """Tests for vendor and CRM aggregation"""

    def test_conversations(self):
        metrics = aggregate_conversations([
            {"direction": "inbound", "call_duration_secs": 60, "call_successful": "success"},
            {"direction": "outbound", "call_duration_secs": 31, "call_successful": "failure"},
            {"call_duration_secs": 0},
        ])

        assert metrics.total_calls == 3
        assert metrics.inbound_calls == 1
        assert metrics.outbound_calls == 2
        assert metrics.total_duration == 91
        assert metrics.average_duration == 30
        assert metrics.success_rate == 33.33

    def test_appointments_credit_primary_agent(self):
        counts = aggregate_appointments_by_agent(make_tenant(), [
            {"appointmentStatus": "confirmed"},
            {"appointmentStatus": "new"},
            {"appointmentStatus": "cancelled"},
        ])

        assert counts == {"agent-primary": 2}


class TestMetricsService:
    """Tests for metrics writes and reports"""

    @pytest.mark.asyncio
    async def test_booked_inbound_call(self, seeded_repository):
        service = MetricsService(repository=seeded_repository)

        await service.increment_call_metrics("acme", "agent-primary", CallDirection.INBOUND, duration=120, period="2026-03")
        await service.increment_bookings("acme", "agent-primary", period="2026-03")

        entry = await service.get_agent_metrics("acme", "agent-primary", "2026-03")
        m = entry.metrics
        assert (m.inbound_calls, m.outbound_calls, m.total_calls) == (1, 0, 1)
        assert (m.total_duration, m.average_duration, m.successful_bookings) == (120, 120, 1)

    @pytest.mark.asyncio
    async def test_average_is_rounded(self, seeded_repository):
        service = MetricsService(repository=seeded_repository)

        await service.increment_call_metrics("acme", "agent-primary", CallDirection.INBOUND, duration=10, period="2026-03")
        await service.increment_call_metrics("acme", "agent-primary", CallDirection.OUTBOUND, duration=15, period="2026-03")

        entry = await service.get_agent_metrics("acme", "agent-primary", "2026-03")
        assert entry.metrics.average_duration == 12
        assert entry.metrics.outbound_calls == 1

    @pytest.mark.asyncio
    async def test_one_entry_per_key(self, seeded_repository):
        service = MetricsService(repository=seeded_repository)

        for _ in range(3):
            await service.increment_call_metrics("acme", "agent-second", CallDirection.INBOUND, period="2026-03")
        await service.upsert_source_metrics("acme", "agent-second", "2026-03", MetricsSource.ELEVENLABS, CallMetrics(total_calls=4))
        await service.upsert_source_metrics("acme", "agent-second", "2026-03", MetricsSource.ELEVENLABS, CallMetrics(total_calls=5))

        tenant = await seeded_repository.get_tenant("acme")
        keys = [e.key() for e in tenant.metrics_history]
        assert len(keys) == len(set(keys)) == 2

    @pytest.mark.asyncio
    async def test_combined_cannot_be_stored(self, seeded_repository):
        service = MetricsService(repository=seeded_repository)

        with pytest.raises(ValidationError):
            await service.upsert_source_metrics("acme", "agent-primary", "2026-03", MetricsSource.COMBINED, CallMetrics())

    @pytest.mark.asyncio
    async def test_all_agents_zero_filled(self, seeded_repository):
        service = MetricsService(repository=seeded_repository)
        await service.increment_call_metrics("acme", "agent-primary", CallDirection.INBOUND, duration=30, period="2026-03")

        results = await service.get_all_agent_metrics("acme", "2026-03")

        assert [r["agent_id"] for r in results] == ["agent-primary", "agent-second"]
        assert results[0]["metrics"]["total_calls"] == 1
        assert results[1]["metrics"] == CallMetrics().model_dump()
        assert results[1]["agent_name"] == "Evening line"

    @pytest.mark.asyncio
    async def test_comparison(self, seeded_repository):
        service = MetricsService(repository=seeded_repository)
        for _ in range(2):
            await service.increment_call_metrics("acme", "agent-primary", CallDirection.INBOUND, duration=60, period="2026-02")
        for _ in range(3):
            await service.increment_call_metrics("acme", "agent-primary", CallDirection.INBOUND, duration=60, period="2026-03")

        result = await service.compare("acme", "agent-primary", "2026-02", "2026-03")

        assert result["changes"]["inbound_calls"] == 50
        assert result["changes"]["outbound_calls"] == 0
        assert result["changes"]["average_duration"] == 0
        assert result["start_metrics"]["total_calls"] == 2

    @pytest.mark.asyncio
    async def test_combined_report(self, seeded_repository):
        service = MetricsService(repository=seeded_repository)
        await service.increment_call_metrics("acme", "agent-primary", CallDirection.INBOUND, duration=100, period="2026-03")
        await service.increment_bookings("acme", "agent-primary", period="2026-03")
        await service.upsert_source_metrics(
            "acme", "agent-primary", "2026-03", MetricsSource.ELEVENLABS,
            CallMetrics(inbound_calls=2, total_calls=3, outbound_calls=1, total_duration=200)
        )
        await service.upsert_source_metrics(
            "acme", "agent-primary", "2026-03", MetricsSource.GHL, CallMetrics(successful_appointments=4)
        )

        report = await service.combined_report("acme", "2026-03")

        combined = report["combined_metrics"]["agent-primary"]["sources"]["combined"]
        assert combined["total_calls"] == 4
        assert combined["inbound_calls"] == 3
        assert combined["successful_bookings"] == 5
        assert combined["average_duration"] == 75
        assert report["combined_metrics"]["agent-second"]["sources"]["internal"] is None

    @pytest.mark.asyncio
    async def test_recalculate_from_history(self, seeded_repository):
        now = {"t": datetime(2026, 3, 5, 12, 0, tzinfo=timezone.utc)}
        writer = CallRecordWriter(seeded_repository, clock=lambda: now["t"])
        await writer.record_call_start("acme", "CA1", CallDirection.INBOUND)
        await writer.record_call_end("CA1", CallStatus.BOOKED_APPOINTMENT, ended_at=now["t"] + timedelta(seconds=90))
        await writer.record_call_start("acme", "CA2", CallDirection.OUTBOUND, agent_id="agent-second")
        now["t"] = datetime(2026, 4, 1, tzinfo=timezone.utc)
        await writer.record_call_start("acme", "CA3", CallDirection.INBOUND)

        entries = await MetricsService(repository=seeded_repository).recalculate_from_history("acme", "2026-03")

        by_agent = {e.agent_id: e.metrics for e in entries}
        assert by_agent["agent-primary"].total_calls == 1
        assert by_agent["agent-primary"].successful_bookings == 1
        assert by_agent["agent-primary"].average_duration == 90
        assert by_agent["agent-second"].outbound_calls == 1

    @pytest.mark.asyncio
    async def test_sync_voice_metrics(self, seeded_repository):
        voice = MagicMock()
        voice.list_conversations = AsyncMock(return_value=[{"direction": "inbound", "call_duration_secs": 40}])
        service = MetricsService(repository=seeded_repository, voice=voice)

        entries = await service.sync_voice_metrics("acme", "2026-03")

        assert len(entries) == 2
        assert all(e.source == MetricsSource.ELEVENLABS for e in entries)
        agent_id, start, end = voice.list_conversations.await_args_list[0].args
        assert agent_id == "agent-primary"
        assert (start, end) == period_bounds("2026-03")

    @pytest.mark.asyncio
    async def test_sync_crm_appointments(self, seeded_repository):
        crm = MagicMock()
        crm.ensure_valid_access_token = AsyncMock(return_value={"access_token": "tok", "location_id": "acme"})
        crm.list_calendar_events = AsyncMock(return_value=[{"appointmentStatus": "confirmed"}])
        service = MetricsService(repository=seeded_repository, crm=crm)

        entries = await service.sync_crm_appointments("acme", "2026-03")

        assert [(e.agent_id, e.metrics.successful_appointments) for e in entries] == [("agent-primary", 1)]
        token, tenant_id, cal_id, start_ms, end_ms = crm.list_calendar_events.await_args.args
        assert (token, tenant_id, cal_id) == ("tok", "acme", "cal-1")
        assert start_ms == int(datetime(2026, 3, 1, tzinfo=timezone.utc).timestamp() * 1000)
