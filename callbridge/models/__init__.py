"""Data models"""

from .call import (
    CallStatus,
    CallDirection,
    CallSentiment,
    CallData,
    CallDetails,
    CallHistoryEntry,
    MakeCallRequest,
    TransferCallRequest,
    utcnow
)
from .metrics import MetricsSource, CallMetrics, AgentMetricsEntry
from .tenant import (
    TenantStatus,
    AgentType,
    ClientMeta,
    AgentConfig,
    AgentView,
    Tenant,
    TenantCreate,
    TenantUpdate,
    AgentCreate,
    AgentUpdate
)

__all__ = [
    "CallStatus",
    "CallDirection",
    "CallSentiment",
    "CallData",
    "CallDetails",
    "CallHistoryEntry",
    "MakeCallRequest",
    "TransferCallRequest",
    "utcnow",
    "MetricsSource",
    "CallMetrics",
    "AgentMetricsEntry",
    "TenantStatus",
    "AgentType",
    "ClientMeta",
    "AgentConfig",
    "AgentView",
    "Tenant",
    "TenantCreate",
    "TenantUpdate",
    "AgentCreate",
    "AgentUpdate"
]
