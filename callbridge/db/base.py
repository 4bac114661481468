"""
Tenant Repository Base Classes

Tenants are stored as whole documents (profile, agents, call history and
metrics history together). Adapters only have to provide an atomic
read-modify-write primitive plus the call-id correlation index; the nested
call-history operations are built on top of those.
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Callable

from callbridge.models.tenant import Tenant
from callbridge.models.call import CallHistoryEntry

# A mutator edits the tenant in place. Returning False aborts the write.
TenantMutator = Callable[[Tenant], Optional[bool]]


def apply_call_updates(tenant: Tenant, call_sid: str, updates: Dict[str, Any]) -> Optional[CallHistoryEntry]:
    """
    Set dotted-path fields on the history entry matching call_sid.

    Paths are relative to the entry, e.g. "call_data.status" or
    "call_details.call_summary". Returns the updated entry, or None when
    no entry matches.
    """
    entry = tenant.find_call(call_sid)
    if entry is None:
        return None

    for path, value in updates.items():
        target: Any = entry
        *parents, field = path.split(".")
        for name in parents:
            target = getattr(target, name)
        if not hasattr(target, field):
            raise AttributeError(f"Unknown call field: {path}")
        setattr(target, field, value)

    return entry


class TenantRepositoryInterface(ABC):
    """
    Abstract interface for tenant document storage.

    All storage backends (in-process, Redis, ...) must implement this.
    """

    @abstractmethod
    async def connect(self) -> bool:
        """
        Establish connection to the store.
        Returns True if successful, False otherwise.
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the store connection."""
        pass

    # ==================== Tenants ====================

    @abstractmethod
    async def create_tenant(self, tenant: Tenant) -> Tenant:
        """Insert a new tenant. Raises ConflictError if the id is taken."""
        pass

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        """Get a tenant by id."""
        pass

    @abstractmethod
    async def list_tenants(self) -> List[Tenant]:
        """List all tenants."""
        pass

    @abstractmethod
    async def update_tenant(self, tenant_id: str, mutator: TenantMutator) -> Optional[Tenant]:
        """
        Atomically load, mutate and save a tenant.

        Returns the saved tenant, or None if the tenant does not exist or
        the mutator returned False. Exceptions raised by the mutator
        propagate and nothing is written.
        """
        pass

    @abstractmethod
    async def delete_tenant(self, tenant_id: str) -> bool:
        """Delete a tenant and its correlation index entries."""
        pass

    # ==================== Call History ====================

    @abstractmethod
    async def append_call(self, tenant_id: str, entry: CallHistoryEntry) -> bool:
        """
        Append a call-history entry and index its call sid to the tenant,
        in one atomic step.

        Returns False without writing if the tenant does not exist or the
        call sid is already present in its history.
        """
        pass

    @abstractmethod
    async def find_tenant_id_for_call(self, call_sid: str) -> Optional[str]:
        """Look up the owning tenant of a call in the correlation index."""
        pass

    async def update_call(
        self,
        tenant_id: str,
        call_sid: str,
        updates: Dict[str, Any]
    ) -> Optional[CallHistoryEntry]:
        """
        Find the entry matching both tenant and call sid and set fields on it.

        Returns the updated entry, or None when nothing matched.
        """
        updated: Dict[str, CallHistoryEntry] = {}

        def mutate(tenant: Tenant) -> bool:
            entry = apply_call_updates(tenant, call_sid, updates)
            if entry is None:
                return False
            updated["entry"] = entry
            return True

        tenant = await self.update_tenant(tenant_id, mutate)
        if tenant is None:
            return None
        return updated["entry"]

    async def get_call(self, tenant_id: str, call_sid: str) -> Optional[CallHistoryEntry]:
        tenant = await self.get_tenant(tenant_id)
        if tenant is None:
            return None
        return tenant.find_call(call_sid)

    # ==================== Lookups ====================

    async def find_tenant_by_phone(self, phone: str) -> Optional[Tenant]:
        """Find the tenant owning a carrier number (primary or additional agent)."""
        for tenant in await self.list_tenants():
            if tenant.find_agent_by_phone(phone):
                return tenant
        return None

    async def find_tenant_by_agent_id(self, agent_id: str) -> Optional[Tenant]:
        """Find the tenant owning a voice agent id (primary or additional agent)."""
        for tenant in await self.list_tenants():
            if tenant.find_agent_by_id(agent_id):
                return tenant
        return None
