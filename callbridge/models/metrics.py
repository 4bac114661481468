"""
Agent Metrics Models
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from .call import utcnow


class MetricsSource(str, Enum):
    INTERNAL = "internal"
    ELEVENLABS = "elevenlabs"
    GHL = "ghl"
    COMBINED = "combined"


class CallMetrics(BaseModel):
    inbound_calls: int = 0
    outbound_calls: int = 0
    total_calls: int = 0
    successful_bookings: int = 0
    total_duration: int = 0
    average_duration: int = 0
    successful_appointments: int = 0
    success_rate: float = 0.0


class AgentMetricsEntry(BaseModel):
    """At most one entry per (agent_id, period, source)"""
    agent_id: str
    period: str = Field(..., description="Calendar month as YYYY-MM")
    source: MetricsSource = MetricsSource.INTERNAL
    metrics: CallMetrics = Field(default_factory=CallMetrics)
    last_updated: datetime = Field(default_factory=utcnow)
    sync_note: Optional[str] = None

    def key(self) -> tuple:
        return (self.agent_id, self.period, self.source)
