"""
Tenant Service
Manages tenants, their agents, and read-side views over call history
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, List, Any, Tuple

from callbridge.core.logging import get_logger
from callbridge.core.exceptions import (
    ValidationError,
    TenantNotFoundError,
    TenantInactiveError,
    AgentConflictError,
    AgentNotFoundError,
    PrimaryAgentError
)
from callbridge.db import get_repository
from callbridge.db.base import TenantRepositoryInterface
from callbridge.models.tenant import (
    Tenant,
    TenantCreate,
    TenantUpdate,
    AgentConfig,
    AgentCreate,
    AgentUpdate,
    AgentView,
    TenantStatus
)

logger = get_logger(__name__)


def check_agent_conflicts(
    tenant: Tenant,
    agent_id: Optional[str] = None,
    phone: Optional[str] = None,
    exclude_agent_id: Optional[str] = None
) -> None:
    """
    Raise AgentConflictError if agent_id or phone is already used by the
    primary agent or any additional agent other than exclude_agent_id.
    """
    if agent_id and agent_id != exclude_agent_id:
        if tenant.agent_id == agent_id:
            raise AgentConflictError("Agent ID already exists as primary agent", "agent_id", agent_id)
        if any(a.agent_id == agent_id for a in tenant.additional_agents):
            raise AgentConflictError("Agent ID already exists in additional agents", "agent_id", agent_id)

    if phone:
        if tenant.twilio_phone_number == phone and exclude_agent_id != tenant.agent_id:
            raise AgentConflictError(
                "Twilio phone number already exists as primary number", "twilio_phone_number", phone
            )
        for agent in tenant.additional_agents:
            if agent.twilio_phone_number == phone and agent.agent_id != exclude_agent_id:
                raise AgentConflictError(
                    "Twilio phone number already exists in additional agents", "twilio_phone_number", phone
                )


class TenantService:
    """Service for managing tenants and their agents"""

    def __init__(self, repository: Optional[TenantRepositoryInterface] = None):
        self._repository = repository

    @property
    def repository(self) -> TenantRepositoryInterface:
        return self._repository or get_repository()

    # ==================== Tenants ====================

    async def create_tenant(self, data: TenantCreate) -> Tenant:
        """Create a tenant with a fresh client token and secret"""
        required = {
            "client_meta.full_name": data.client_meta.full_name,
            "client_meta.email": data.client_meta.email,
            "client_meta.phone": data.client_meta.phone,
            "agent_id": data.agent_id,
            "twilio_phone_number": data.twilio_phone_number,
            "tenant_id": data.tenant_id,
            "cal_id": data.cal_id,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", field=missing[0])

        tenant = Tenant(
            tenant_id=data.tenant_id,
            cal_id=data.cal_id,
            client_token=secrets.token_hex(16),
            client_secret=secrets.token_hex(32),
            agent_id=data.agent_id,
            twilio_phone_number=data.twilio_phone_number,
            meeting_title=data.meeting_title,
            meeting_location=data.meeting_location,
            status=data.status,
            client_meta=data.client_meta,
            refresh_token=data.refresh_token,
        )
        created = await self.repository.create_tenant(tenant)
        logger.info(f"Created tenant: {created.tenant_id}")
        return created

    async def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.repository.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    async def get_active_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.get_tenant(tenant_id)
        if not tenant.is_active:
            raise TenantInactiveError(tenant_id, tenant.status.value)
        return tenant

    async def list_tenants(self, status: Optional[TenantStatus] = None) -> List[Tenant]:
        tenants = await self.repository.list_tenants()
        if status:
            tenants = [t for t in tenants if t.status == status]
        return tenants

    async def update_tenant(self, tenant_id: str, updates: TenantUpdate) -> Tenant:
        changes = updates.model_dump(exclude_unset=True, exclude_none=True)

        def apply(tenant: Tenant) -> None:
            # The primary slot must stay unique against the additional agents
            check_agent_conflicts(
                tenant,
                agent_id=changes.get("agent_id"),
                phone=changes.get("twilio_phone_number"),
                exclude_agent_id=tenant.agent_id
            )
            for field, value in changes.items():
                if field == "client_meta":
                    value = updates.client_meta
                setattr(tenant, field, value)

        tenant = await self.repository.update_tenant(tenant_id, apply)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        logger.info(f"Updated tenant: {tenant_id}")
        return tenant

    async def delete_tenant(self, tenant_id: str) -> None:
        if not await self.repository.delete_tenant(tenant_id):
            raise TenantNotFoundError(tenant_id)
        logger.info(f"Deleted tenant: {tenant_id}")

    async def reset_secret(self, tenant_id: str) -> Tuple[Tenant, str]:
        secret = secrets.token_hex(32)

        def apply(tenant: Tenant) -> None:
            tenant.client_secret = secret

        tenant = await self.repository.update_tenant(tenant_id, apply)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        logger.info(f"Reset client secret for tenant: {tenant_id}")
        return tenant, secret

    # ==================== Agents ====================

    async def list_agents(self, tenant_id: str) -> List[AgentView]:
        return (await self.get_tenant(tenant_id)).get_all_agents()

    async def add_agent(self, tenant_id: str, data: AgentCreate) -> AgentConfig:
        """Add an additional agent. Rejected without writing if it clashes with any existing agent."""
        if not data.agent_id or not data.twilio_phone_number:
            raise ValidationError("agent_id and twilio_phone_number are required")

        agent = AgentConfig(**data.model_dump())

        def apply(tenant: Tenant) -> None:
            if not tenant.is_active:
                raise TenantInactiveError(tenant_id, tenant.status.value)
            check_agent_conflicts(tenant, agent_id=agent.agent_id, phone=agent.twilio_phone_number)
            tenant.additional_agents.append(agent)

        if await self.repository.update_tenant(tenant_id, apply) is None:
            raise TenantNotFoundError(tenant_id)
        logger.info(f"Added agent {agent.agent_id} to tenant {tenant_id}")
        return agent

    async def update_agent(self, tenant_id: str, agent_id: str, data: AgentUpdate) -> AgentConfig:
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        updated: Dict[str, AgentConfig] = {}

        def apply(tenant: Tenant) -> None:
            if not tenant.is_active:
                raise TenantInactiveError(tenant_id, tenant.status.value)
            if agent_id == tenant.agent_id:
                raise PrimaryAgentError("Cannot update primary agent using this function. Use tenant update instead.")
            agent = next((a for a in tenant.additional_agents if a.agent_id == agent_id), None)
            if agent is None:
                raise AgentNotFoundError(tenant_id, agent_id)
            if "twilio_phone_number" in changes:
                check_agent_conflicts(tenant, phone=changes["twilio_phone_number"], exclude_agent_id=agent_id)
            for field, value in changes.items():
                setattr(agent, field, value)
            updated["agent"] = agent

        if await self.repository.update_tenant(tenant_id, apply) is None:
            raise TenantNotFoundError(tenant_id)
        logger.info(f"Updated agent {agent_id} of tenant {tenant_id}")
        return updated["agent"]

    async def remove_agent(self, tenant_id: str, agent_id: str) -> None:
        def apply(tenant: Tenant) -> None:
            if not tenant.is_active:
                raise TenantInactiveError(tenant_id, tenant.status.value)
            if agent_id == tenant.agent_id:
                raise PrimaryAgentError("Cannot remove primary agent using this function")
            remaining = [a for a in tenant.additional_agents if a.agent_id != agent_id]
            if len(remaining) == len(tenant.additional_agents):
                raise AgentNotFoundError(tenant_id, agent_id)
            tenant.additional_agents = remaining

        if await self.repository.update_tenant(tenant_id, apply) is None:
            raise TenantNotFoundError(tenant_id)
        logger.info(f"Removed agent {agent_id} from tenant {tenant_id}")

    async def find_tenant_by_any_agent(
        self,
        phone: Optional[str] = None,
        agent_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Locate the active tenant owning a phone number or agent id.

        Returns {"tenant", "agent", "found_by"} where found_by is one of
        primary_phone, additional_phone, primary_agent, additional_agent.
        """
        for tenant in await self.list_tenants(TenantStatus.ACTIVE):
            if phone:
                agent = tenant.find_agent_by_phone(phone)
                if agent:
                    found_by = "primary_phone" if agent.is_primary else "additional_phone"
                    return {"tenant": tenant, "agent": agent, "found_by": found_by}
            if agent_id:
                agent = tenant.find_agent_by_id(agent_id)
                if agent:
                    found_by = "primary_agent" if agent.is_primary else "additional_agent"
                    return {"tenant": tenant, "agent": agent, "found_by": found_by}
        return None

    async def discover_tenant(
        self,
        twilio_phone: Optional[str] = None,
        tenant_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        customer_phone: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Find an active tenant trying, in order, the carrier number, the tenant
        id, the agent id and finally the tenant's own contact phone.

        Returns the same shape as find_tenant_by_any_agent; found_by may also
        be tenant_id or customer_phone, in which case agent is None.
        """
        if twilio_phone:
            match = await self.find_tenant_by_any_agent(phone=twilio_phone)
            if match:
                return match
        if tenant_id:
            tenant = await self.repository.get_tenant(tenant_id)
            if tenant and tenant.status == TenantStatus.ACTIVE:
                return {"tenant": tenant, "agent": None, "found_by": "tenant_id"}
        if agent_id:
            match = await self.find_tenant_by_any_agent(agent_id=agent_id)
            if match:
                return match
        if customer_phone:
            for tenant in await self.list_tenants(TenantStatus.ACTIVE):
                if tenant.client_meta.phone == customer_phone:
                    return {"tenant": tenant, "agent": None, "found_by": "customer_phone"}
        return None

    # ==================== Call history views ====================

    async def list_calls(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Dict[str, Any]:
        tenant = await self.get_tenant(tenant_id)
        history = sorted(tenant.call_history, key=lambda e: e.call_data.start_time, reverse=True)
        if status:
            history = [e for e in history if e.call_data.status.value == status]
        page = history[offset:offset + limit]
        return {
            "tenantId": tenant_id,
            "total": len(tenant.call_history),
            "filtered": len(history),
            "callHistory": [e.model_dump(mode="json") for e in page],
        }

    async def dashboard(self) -> Dict[str, Any]:
        tenants = await self.list_tenants()
        since = datetime.now(timezone.utc) - timedelta(days=1)
        active = sum(1 for t in tenants if t.is_active)

        total = recent = 0
        by_status: Dict[str, int] = {}
        for tenant in tenants:
            for entry in tenant.call_history:
                total += 1
                if _aware(entry.call_data.start_time) >= since:
                    recent += 1
                key = entry.call_data.status.value
                by_status[key] = by_status.get(key, 0) + 1

        return {
            "tenants": {"active": active, "inactive": len(tenants) - active, "total": len(tenants)},
            "calls": {"recent": recent, "total": total, "byStatus": by_status},
        }

    async def recent_activity(self, days: int = 7, limit: int = 10) -> Dict[str, Any]:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        activities = []
        for tenant in await self.list_tenants():
            for entry in tenant.call_history:
                started = _aware(entry.call_data.start_time)
                if started < cutoff:
                    continue
                activities.append({
                    "tenantId": tenant.tenant_id,
                    "tenantName": tenant.client_meta.full_name,
                    "businessName": tenant.client_meta.business_name,
                    "callId": entry.call_id,
                    "callSid": entry.call_data.call_sid,
                    "phone": entry.call_data.phone,
                    "status": entry.call_data.status.value,
                    "startTime": started.isoformat(),
                    "duration": entry.call_data.duration,
                    "summary": entry.call_details.call_summary,
                })
        activities.sort(key=lambda a: a["startTime"], reverse=True)
        activities = activities[:limit]
        return {"period": f"{days} days", "count": len(activities), "activities": activities}


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# Singleton
_tenant_service: Optional[TenantService] = None


def get_tenant_service() -> TenantService:
    """Get or create tenant service instance"""
    global _tenant_service
    if _tenant_service is None:
        _tenant_service = TenantService()
    return _tenant_service
