"""
Tenant Models
A tenant is one paying customer with a primary agent and optional additional agents
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from .call import CallHistoryEntry, utcnow
from .metrics import AgentMetricsEntry


class TenantStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    SUSPENDED = "Suspended"


class AgentType(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    BOTH = "both"


class ClientMeta(BaseModel):
    """Contact details for the tenant"""
    full_name: str = ""
    phone: Optional[str] = None
    business_name: str = ""
    city: str = ""
    job_title: str = ""
    email: str = ""
    notes: str = ""


class AgentConfig(BaseModel):
    """An additional routing identity owned by a tenant"""
    agent_id: str
    twilio_phone_number: str
    agent_name: str = "Additional Agent"
    agent_type: AgentType = AgentType.BOTH
    meeting_title: str = "Consultation"
    meeting_location: str = "Google Meet"
    is_enabled: bool = True
    inbound_enabled: bool = True
    outbound_enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class AgentView(AgentConfig):
    """Agent as returned by listings; the primary agent is flattened into this shape"""
    is_primary: bool = False


class Tenant(BaseModel):
    """Complete tenant record"""
    tenant_id: str
    cal_id: Optional[str] = None
    client_token: Optional[str] = None
    client_secret: Optional[str] = None

    # GoHighLevel OAuth
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    # Primary agent lives in top-level fields
    agent_id: str
    twilio_phone_number: str
    meeting_title: str = "Consultation"
    meeting_location: str = "Google Meet"
    additional_agents: List[AgentConfig] = Field(default_factory=list)

    status: TenantStatus = TenantStatus.ACTIVE
    client_meta: ClientMeta = Field(default_factory=ClientMeta)
    call_history: List[CallHistoryEntry] = Field(default_factory=list)
    metrics_history: List[AgentMetricsEntry] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE

    @property
    def has_crm_integration(self) -> bool:
        return bool(self.refresh_token)

    def primary_agent(self) -> AgentView:
        return AgentView(
            agent_id=self.agent_id,
            twilio_phone_number=self.twilio_phone_number,
            agent_name="Primary Agent",
            meeting_title=self.meeting_title,
            meeting_location=self.meeting_location,
            created_at=self.created_at,
            is_primary=True,
        )

    def get_all_agents(self) -> List[AgentView]:
        """Primary agent first, then additional agents in insertion order"""
        agents = [self.primary_agent()]
        agents.extend(AgentView(**a.model_dump(), is_primary=False) for a in self.additional_agents)
        return agents

    def find_agent_by_phone(self, phone: str) -> Optional[AgentView]:
        for agent in self.get_all_agents():
            if agent.twilio_phone_number == phone:
                return agent
        return None

    def find_agent_by_id(self, agent_id: str) -> Optional[AgentView]:
        for agent in self.get_all_agents():
            if agent.agent_id == agent_id:
                return agent
        return None

    def find_call(self, call_sid: str) -> Optional[CallHistoryEntry]:
        for entry in self.call_history:
            if entry.call_data.call_sid == call_sid:
                return entry
        return None

    def public_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        """Serialize for API responses; OAuth tokens and history are never exposed"""
        exclude = {"access_token", "refresh_token", "call_history", "metrics_history"}
        if not include_secret:
            exclude.add("client_secret")
        data = self.model_dump(mode="json", exclude=exclude)
        data["crm_connected"] = self.has_crm_integration
        data["total_calls"] = len(self.call_history)
        return data


class TenantCreate(BaseModel):
    """Request to create a tenant"""
    tenant_id: Optional[str] = None
    cal_id: Optional[str] = None
    agent_id: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    meeting_title: str = "Consultation"
    meeting_location: str = "Google Meet"
    status: TenantStatus = TenantStatus.ACTIVE
    client_meta: ClientMeta = Field(default_factory=ClientMeta)
    refresh_token: Optional[str] = None


class TenantUpdate(BaseModel):
    """Partial tenant update"""
    cal_id: Optional[str] = None
    agent_id: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    meeting_title: Optional[str] = None
    meeting_location: Optional[str] = None
    status: Optional[TenantStatus] = None
    client_meta: Optional[ClientMeta] = None
    refresh_token: Optional[str] = None


class AgentCreate(BaseModel):
    agent_id: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    agent_name: str = "Additional Agent"
    agent_type: AgentType = AgentType.BOTH
    meeting_title: str = "Consultation"
    meeting_location: str = "Google Meet"
    is_enabled: bool = True
    inbound_enabled: bool = True
    outbound_enabled: bool = True


class AgentUpdate(BaseModel):
    twilio_phone_number: Optional[str] = None
    agent_name: Optional[str] = None
    agent_type: Optional[AgentType] = None
    meeting_title: Optional[str] = None
    meeting_location: Optional[str] = None
    is_enabled: Optional[bool] = None
    inbound_enabled: Optional[bool] = None
    outbound_enabled: Optional[bool] = None
